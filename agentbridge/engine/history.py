"""Index of sessions the agent CLIs have persisted on disk.

Both CLIs write one JSONL transcript per session:

- Claude: ``~/.claude/projects/<encoded-cwd>/<uuid>.jsonl``
- Codex:  ``~/.codex/sessions/YYYY/MM/DD/rollout-<ts>-<uuid>.jsonl``

The index answers "which sessions exist for this workspace" (newest
first), "where does this session live", and lets callers drop a cached
entry when a transcript changes. Parsed entries are cached by file
mtime so repeated polling during identity resolution stays cheap.
"""
from __future__ import annotations

import abc
import json
import logging
import os
import re
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UUID_FILE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\.jsonl$"
)
_ROLLOUT_ID = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\.jsonl$"
)
_SYSTEM_PREFIXES = (
    "Caveat:",
    "<command-name>",
    "<local-command-stdout>",
    "<local-command-stderr>",
)
_SUMMARY_LEN = 100
# Codex transcripts can be large; only the head is needed for the index.
_CODEX_MAX_LINES = 1000


@dataclass
class HistoryEntry:
    """One persisted agent session."""
    session_id: str
    full_path: str
    project_path: str
    summary: str = ""
    message_count: int = 0
    last_updated: datetime | None = None
    branch: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "path": self.full_path,
            "project_path": self.project_path,
            "summary": self.summary,
            "message_count": self.message_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "branch": self.branch,
        }


def paths_match(a: str, b: str) -> bool:
    """True when *a* and *b* are the same directory or one contains the other.

    An empty side matches anything; comparison is case-insensitive on
    macOS and Windows.
    """
    if not a or not b:
        return True
    left = os.path.abspath(a)
    right = os.path.abspath(b)
    if sys.platform in ("darwin", "win32"):
        left, right = left.lower(), right.lower()
    if left == right:
        return True
    return (
        left.startswith(right.rstrip(os.sep) + os.sep)
        or right.startswith(left.rstrip(os.sep) + os.sep)
    )


def _truncate(text: str, limit: int = _SUMMARY_LEN) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") in ("text", "input_text", "output_text")
        ]
        return "\n".join(t for t in texts if t)
    return ""


class HistoryIndex(abc.ABC):
    """Read-only view of one agent CLI's session store."""

    agent_type: str = ""

    def __init__(self) -> None:
        # path -> (mtime_ns, entry or None when unparseable)
        self._cache: dict[str, tuple[int, HistoryEntry | None]] = {}
        self._lock = threading.Lock()

    @abc.abstractmethod
    def _candidate_files(self, workspace_path: str | None) -> list[Path]:
        """Transcript files that may belong to *workspace_path* (None: all)."""

    @abc.abstractmethod
    def _parse(self, path: Path) -> HistoryEntry | None:
        ...

    def sessions_for(self, workspace_path: str) -> list[HistoryEntry]:
        """Sessions whose project path matches *workspace_path*, newest first."""
        entries = [
            entry
            for entry in self._entries(self._candidate_files(workspace_path))
            if paths_match(entry.project_path, workspace_path)
        ]
        entries.sort(
            key=lambda e: e.last_updated or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return entries

    def latest(self, workspace_path: str) -> HistoryEntry | None:
        entries = self.sessions_for(workspace_path)
        return entries[0] if entries else None

    def session_ids(self, workspace_path: str) -> frozenset[str]:
        return frozenset(e.session_id for e in self.sessions_for(workspace_path))

    def find(self, session_id: str) -> HistoryEntry | None:
        if not session_id:
            return None
        for entry in self._entries(self._candidate_files(None)):
            if entry.session_id == session_id:
                return entry
        return None

    def invalidate_by_path(self, path: str) -> None:
        with self._lock:
            self._cache.pop(str(path), None)

    def refresh(self) -> None:
        """Drop cached entries whose files disappeared."""
        with self._lock:
            stale = [p for p in self._cache if not os.path.exists(p)]
            for p in stale:
                del self._cache[p]

    def _entries(self, files: list[Path]) -> list[HistoryEntry]:
        entries: list[HistoryEntry] = []
        for path in files:
            key = str(path)
            try:
                mtime_ns = path.stat().st_mtime_ns
            except OSError:
                continue
            with self._lock:
                cached = self._cache.get(key)
            if cached is not None and cached[0] == mtime_ns:
                entry = cached[1]
            else:
                try:
                    entry = self._parse(path)
                except OSError as exc:
                    logger.debug("Failed to read transcript path=%s err=%s", path, exc)
                    continue
                with self._lock:
                    self._cache[key] = (mtime_ns, entry)
            if entry is not None:
                entries.append(entry)
        return entries


class ClaudeHistoryIndex(HistoryIndex):
    """Sessions under ``~/.claude/projects``."""

    agent_type = "claude"

    def __init__(self, projects_dir: str | Path) -> None:
        super().__init__()
        self.projects_dir = Path(projects_dir)

    @staticmethod
    def encode_path(workspace_path: str) -> str:
        """``/Users/me/app`` -> ``-Users-me-app``."""
        encoded = re.sub(r"[^A-Za-z0-9-]", "-", os.path.normpath(workspace_path))
        if not encoded.startswith("-"):
            encoded = "-" + encoded
        return encoded

    def project_dir(self, workspace_path: str) -> Path:
        return self.projects_dir / self.encode_path(workspace_path)

    def session_file(self, workspace_path: str, session_id: str) -> Path:
        return self.project_dir(workspace_path) / f"{session_id}.jsonl"

    def _candidate_files(self, workspace_path: str | None) -> list[Path]:
        if workspace_path is not None:
            dirs = [self.project_dir(workspace_path)]
        elif self.projects_dir.is_dir():
            dirs = [d for d in self.projects_dir.iterdir() if d.is_dir()]
        else:
            return []
        files: list[Path] = []
        for directory in dirs:
            if not directory.is_dir():
                continue
            # agent-*.jsonl sidechains never match the uuid pattern
            files.extend(
                p for p in directory.iterdir()
                if p.is_file() and _UUID_FILE.match(p.name)
            )
        return files

    def _parse(self, path: Path) -> HistoryEntry | None:
        entry = HistoryEntry(
            session_id=path.stem,
            full_path=str(path),
            project_path="",
            last_updated=_mtime(path),
        )
        with open(path, encoding="utf-8", errors="replace") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    record = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(record, dict):
                    continue
                if not entry.project_path and record.get("cwd"):
                    entry.project_path = str(record["cwd"])
                kind = record.get("type")
                message = record.get("message") or {}
                content = message.get("content") if isinstance(message, dict) else None
                if kind == "user" and self._is_user_text(content):
                    entry.message_count += 1
                    if not entry.summary:
                        entry.summary = _truncate(_content_text(content))
                        entry.branch = str(record.get("gitBranch") or "")
                elif kind == "assistant" and self._has_text(content):
                    entry.message_count += 1
        # Sessions with no real exchange yet (e.g. trust prompt declined)
        if entry.message_count == 0:
            return None
        if not entry.project_path:
            entry.project_path = "/" + path.parent.name.lstrip("-").replace("-", "/")
        return entry

    @staticmethod
    def _is_user_text(content: Any) -> bool:
        if isinstance(content, str):
            return bool(content) and not content.startswith(_SYSTEM_PREFIXES)
        if isinstance(content, list):
            return any(
                isinstance(b, dict) and b.get("type") == "text" for b in content
            )
        return False

    @staticmethod
    def _has_text(content: Any) -> bool:
        if not isinstance(content, list):
            return isinstance(content, str) and bool(content)
        return any(
            isinstance(b, dict) and b.get("type") in ("text", "thinking")
            for b in content
        )


class CodexHistoryIndex(HistoryIndex):
    """Rollout transcripts under ``~/.codex/sessions``."""

    agent_type = "codex"

    def __init__(self, sessions_dir: str | Path) -> None:
        super().__init__()
        self.sessions_dir = Path(sessions_dir)

    def _candidate_files(self, workspace_path: str | None) -> list[Path]:
        if not self.sessions_dir.is_dir():
            return []
        # Rollouts are date-partitioned, not workspace-partitioned.
        return [
            p for p in self.sessions_dir.rglob("rollout-*.jsonl") if p.is_file()
        ]

    def _parse(self, path: Path) -> HistoryEntry | None:
        match = _ROLLOUT_ID.search(path.name)
        entry = HistoryEntry(
            session_id=match.group(1) if match else "",
            full_path=str(path),
            project_path="",
            last_updated=_mtime(path),
        )
        last_agent_message = ""
        with open(path, encoding="utf-8", errors="replace") as f:
            for line_no, raw in enumerate(f):
                if line_no >= _CODEX_MAX_LINES:
                    break
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    record = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(record, dict):
                    continue
                payload = record.get("payload") or {}
                if not isinstance(payload, dict):
                    continue
                kind = record.get("type")
                if kind == "session_meta":
                    entry.session_id = str(payload.get("id") or entry.session_id)
                    entry.project_path = entry.project_path or str(payload.get("cwd") or "")
                    git = payload.get("git") or {}
                    if isinstance(git, dict):
                        entry.branch = str(git.get("branch") or "")
                elif kind == "turn_context":
                    entry.project_path = entry.project_path or str(payload.get("cwd") or "")
                elif kind == "response_item" and payload.get("type") == "message":
                    role = payload.get("role")
                    text = _content_text(payload.get("content"))
                    if role == "user" and text and not text.startswith("<"):
                        entry.message_count += 1
                        if not entry.summary:
                            entry.summary = _truncate(text)
                    elif role == "assistant" and text:
                        entry.message_count += 1
                elif kind == "event_msg" and payload.get("type") == "agent_message":
                    last_agent_message = str(payload.get("message") or "")
        if not entry.session_id or not entry.project_path:
            return None
        if not entry.summary and last_agent_message:
            entry.summary = _truncate(last_agent_message)
        return entry
