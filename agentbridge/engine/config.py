"""Configuration loaded from a YAML file and environment variables.

All settings have sensible defaults. Override via BRIDGE_* env vars,
which take precedence over values read from the YAML file.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    """Session bridge configuration."""

    # Transport
    host: str = "127.0.0.1"
    port: int = 0
    sse_queue_size: int = 5000
    sse_keepalive_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    # workspace_id -> absolute directory
    workspaces: dict[str, str] = field(default_factory=dict)

    # Agent CLIs
    default_agent: str = "claude"
    claude_cli: str = "claude"
    codex_cli: str = "codex"
    # Roots of the agents' own session stores. None means ~/.claude, ~/.codex
    claude_home: str | None = None
    codex_home: str | None = None

    # Output coalescing
    flush_interval_seconds: float = 0.08
    max_batch_lines: int = 12
    max_batch_bytes: int = 8 * 1024

    # Identity resolution
    resolve_timeout_seconds: float = 10.0
    resolve_poll_seconds: float = 0.2
    watch_interval_seconds: float = 0.5

    # Process control
    stop_grace_seconds: float = 2.0
    pty_rows: int = 40
    pty_cols: int = 120

    @classmethod
    def from_env(cls, base: BridgeConfig | None = None) -> BridgeConfig:
        """Load configuration from BRIDGE_* environment variables.

        Values not present in the environment come from *base* (or the
        dataclass defaults).
        """
        config = base or cls()
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: BRIDGE_* env overrides: %s",
                ", ".join(sorted(bridge_vars)),
            )
        else:
            logger.debug("BridgeConfig.from_env: no BRIDGE_* env vars set")

        overrides: dict[str, Any] = {}
        for f in fields(cls):
            if f.name == "workspaces":
                continue
            raw = os.getenv(f"BRIDGE_{f.name.upper()}")
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.name, raw, getattr(config, f.name))

        # BRIDGE_WORKSPACES="api=/src/api,web=/src/web"
        raw_workspaces = os.getenv("BRIDGE_WORKSPACES", "").strip()
        if raw_workspaces:
            workspaces = dict(config.workspaces)
            for item in raw_workspaces.split(","):
                if "=" not in item:
                    logger.warning("Ignoring malformed BRIDGE_WORKSPACES item: %s", item)
                    continue
                ws_id, path = item.split("=", 1)
                workspaces[ws_id.strip()] = path.strip()
            overrides["workspaces"] = workspaces

        for name, value in overrides.items():
            setattr(config, name, value)
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load a YAML config file, then apply BRIDGE_* overrides."""
        path = Path(path)
        logger.info("BridgeConfig.from_yaml: loading %s (exists=%s)", path, path.exists())
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.error("BridgeConfig.from_yaml: config file not found at %s", path.absolute())
            raise
        except yaml.YAMLError as exc:
            logger.error("BridgeConfig.from_yaml: YAML parse error in %s: %s", path, exc)
            raise
        if not isinstance(raw, dict):
            raise ValueError(f"config root must be a mapping: {path}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            logger.warning("BridgeConfig.from_yaml: ignoring unknown keys: %s", ", ".join(unknown))
        values = {k: v for k, v in raw.items() if k in known}
        workspaces = values.get("workspaces") or {}
        if not isinstance(workspaces, dict):
            raise ValueError("'workspaces' must map workspace ids to paths")
        values["workspaces"] = {str(k): str(v) for k, v in workspaces.items()}
        return cls.from_env(cls(**values))

    @property
    def claude_projects_dir(self) -> Path:
        home = Path(self.claude_home) if self.claude_home else Path.home() / ".claude"
        return home.expanduser() / "projects"

    @property
    def codex_sessions_dir(self) -> Path:
        home = Path(self.codex_home) if self.codex_home else Path.home() / ".codex"
        return home.expanduser() / "sessions"


def _coerce(name: str, raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in _TRUE_VALUES
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if name in ("log_file", "claude_home", "codex_home"):
        return raw or None
    return raw


class WorkspaceResolver:
    """Maps a workspace identity to its filesystem path."""

    def __init__(self, workspaces: dict[str, str] | None = None) -> None:
        self._workspaces = {
            ws_id: str(Path(path).expanduser())
            for ws_id, path in (workspaces or {}).items()
        }

    def resolve(self, workspace_id: str) -> str | None:
        """Return the directory for *workspace_id*, or None if unknown.

        Besides configured ids, an existing absolute directory is
        accepted as its own workspace id.
        """
        if not workspace_id:
            return None
        path = self._workspaces.get(workspace_id)
        if path:
            return path
        candidate = Path(workspace_id).expanduser()
        if candidate.is_absolute() and candidate.is_dir():
            return str(candidate)
        return None

    def workspace_id_for(self, path: str) -> str:
        """Reverse lookup; falls back to the path itself."""
        for ws_id, ws_path in self._workspaces.items():
            if ws_path == path:
                return ws_id
        return path

    def items(self) -> list[tuple[str, str]]:
        return sorted(self._workspaces.items())
