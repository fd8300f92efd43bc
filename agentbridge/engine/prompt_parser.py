"""Detect interactive prompts in sanitized terminal output.

The interactive Claude CLI renders permission requests as a panel with a
header ("Bash command", "Write(file.txt)"), a preview, a question line
and numbered options ending in "Esc to cancel". PromptParser consumes
sanitized lines one at a time, tracks a coarse activity state, and
returns a PendingPermission once a complete prompt has been seen.
"""
from __future__ import annotations

import logging
import re

from agentbridge.engine.models import PendingPermission, PromptOption, PtyState

logger = logging.getLogger(__name__)

_BUFFER_LIMIT = 30
_PREVIEW_LIMIT = 20

_WRITE = re.compile(r"Write\s*\(([^)]+)\)", re.I)
_CREATE = re.compile(r"Create\s+(?:file\s+)?(\S+\.[a-zA-Z0-9]+)", re.I)
_EDIT = re.compile(r"\bEdit\s*\(([^)]+)\)|\bEdit\s+(?:file\s+)?(\S+\.\w+)", re.I)
_DELETE = re.compile(r"^(?:Delete|Remove)\s+(?:file\s+)?(\S+)", re.I)
_BASH = re.compile(
    r"^(?:[●⏺]\s*)?Bash\s*\(([^)]+)\)|^Run(?:ning)?\s+command:?\s*(.+)", re.I,
)
_MCP = re.compile(r"mcp__\w+__\w+|MCP\s+tool", re.I)
_TRUST = re.compile(
    r"trust\s+(?:the\s+)?files?\s+in\s+this\s+folder|Do you want to work in this folder",
    re.I,
)
_PANEL = re.compile(r"^(Bash|Write|Edit|Read|Delete|Create)\s+(command|file)\s*$", re.I)

_ALLOW = re.compile(r"Do you want to|Allow\?|Enter your choice", re.I)
_OPTION = re.compile(r"^\s*([❯>])?\s*([1-9]|[yn])\.\s+(.+)", re.M)
_TEXT_OPTION = re.compile(r"^\s*([❯>])?\s*(Yes,?\s+proceed|No,?\s+exit)", re.M)
_PROMPT_END = re.compile(
    r"^\s*(?:Esc(?:ape)?\s+to\s+cancel|press\s+\d+|enter\s+to\s+confirm)", re.I | re.M,
)

_THINKING = re.compile(r"\((?:esc|ctrl\+c)\s+to\s+interrupt\b", re.I)
_ERROR = re.compile(r"^\s*(?:[A-Za-z]*Error|Failed|Exception|Cannot|Unable to):\s*\S")
_QUESTION = re.compile(r"\?\s*$")
_TIP = re.compile(r"^(?:[⎿\s]*)Tip:", re.I)

_CODE_CHARS = set("{}[]()=|&;")

_DESCRIPTIONS = {
    "write_file": "Claude wants to create a file",
    "edit_file": "Claude wants to edit a file",
    "delete_file": "Claude wants to delete a file",
    "bash_command": "Claude wants to run a command",
    "mcp_tool": "Claude wants to use an MCP tool",
    "trust_folder": "Claude needs to trust this folder",
}

_PANEL_TYPES = {
    "bash": "bash_command",
    "write": "write_file",
    "create": "write_file",
    "edit": "edit_file",
    "delete": "delete_file",
    "read": "unknown",
}


def _is_selected(cursor: str | None) -> bool:
    return cursor in ("❯", ">")


def _option_sort_key(option: PromptOption) -> tuple[int, int, str]:
    if option.key.isdigit():
        return (0, int(option.key), "")
    # y before n for text prompts
    return (1, 0 if option.key == "y" else 1, option.key)


class PromptParser:
    """Stateful line classifier for one interactive session."""

    def __init__(self) -> None:
        self.state = PtyState.IDLE
        self._buffer: list[str] = []
        self._prompt_type = ""
        self._prompt_target = ""

    @property
    def waiting_for_input(self) -> bool:
        return self.state in (PtyState.PERMISSION, PtyState.QUESTION)

    def reset(self) -> None:
        self.state = PtyState.IDLE
        self._buffer = []
        self._prompt_type = ""
        self._prompt_target = ""

    def process_line(self, line: str) -> PendingPermission | None:
        """Classify one sanitized line; return a prompt when one completes."""
        line = line.strip()
        if not line:
            return None

        if _THINKING.search(line):
            self.state = PtyState.THINKING
            self._buffer = []
            return None

        if _ERROR.search(line):
            self.state = PtyState.ERROR
            return None

        self._detect_prompt_type(line)
        self._buffer.append(line)
        if len(self._buffer) > _BUFFER_LIMIT:
            self._buffer = self._buffer[-_BUFFER_LIMIT:]
            # A header that never turned into a prompt is stale by now.
            self._prompt_type = ""
            self._prompt_target = ""

        if self.state != PtyState.PERMISSION:
            prompt = self._detect_prompt()
            if prompt is not None:
                self.state = PtyState.PERMISSION
                self._buffer = []
                logger.debug(
                    "Prompt detected type=%s target=%s options=%d",
                    prompt.type, prompt.target, len(prompt.options),
                )
                return prompt
            if (
                _QUESTION.search(line)
                and not _ALLOW.search(line)
                and not _TIP.search(line)
            ):
                self.state = PtyState.QUESTION
            elif self.state in (PtyState.ERROR, PtyState.THINKING, PtyState.QUESTION):
                self.state = PtyState.IDLE
        return None

    def _detect_prompt_type(self, line: str) -> None:
        panel = _PANEL.match(line)
        if panel:
            self._prompt_type = _PANEL_TYPES[panel.group(1).lower()]
            self._prompt_target = ""
            return

        if (
            self._prompt_type == "trust_folder"
            and not self._prompt_target
            and line.startswith("/")
        ):
            self._prompt_target = line
            return

        if self._prompt_type:
            return

        if _TRUST.search(line):
            self._prompt_type = "trust_folder"
            return

        for pattern, prompt_type in (
            (_WRITE, "write_file"),
            (_CREATE, "write_file"),
            (_EDIT, "edit_file"),
            (_DELETE, "delete_file"),
            (_BASH, "bash_command"),
        ):
            match = pattern.search(line)
            if match:
                target = next((g for g in match.groups() if g), "")
                self._prompt_type = prompt_type
                self._prompt_target = target.strip()
                return

        if _MCP.search(line):
            self._prompt_type = "mcp_tool"

    def _detect_prompt(self) -> PendingPermission | None:
        if len(self._buffer) < 2:
            return None
        text = "\n".join(self._buffer)

        has_allow = bool(_ALLOW.search(text))
        numbered = _OPTION.findall(text)
        textual = _TEXT_OPTION.findall(text)
        if not has_allow and not numbered and not textual:
            return None

        is_trust = self._prompt_type == "trust_folder" or bool(_TRUST.search(text))
        if not _PROMPT_END.search(text):
            if is_trust:
                if len(textual) < 2 and len(numbered) < 2:
                    return None
            elif len(numbered) < 3 or not has_allow:
                return None

        options: dict[str, PromptOption] = {}
        for cursor, key, label in numbered:
            self._add_option(options, key, label.strip(), cursor)
        for cursor, label in textual:
            key = "y" if label.lower().startswith("yes") else "n"
            self._add_option(options, key, label.strip(), cursor)
        if not options:
            return None

        prompt_type = self._prompt_type or ("trust_folder" if is_trust else "unknown")
        target = self._prompt_target
        if target and _CODE_CHARS.intersection(target):
            target = ""
        prompt = PendingPermission(
            type=prompt_type,
            target=target,
            description=_DESCRIPTIONS.get(prompt_type, "Claude needs your permission"),
            preview=self._extract_preview(),
            options=sorted(options.values(), key=_option_sort_key),
        )
        self._prompt_type = ""
        self._prompt_target = ""
        return prompt

    @staticmethod
    def _add_option(
        options: dict[str, PromptOption], key: str, label: str, cursor: str | None,
    ) -> None:
        # Screen redraws repeat options; keep the first label, merge the cursor.
        existing = options.get(key)
        if existing is not None:
            existing.selected = existing.selected or _is_selected(cursor)
            return
        option = PromptOption(key=key, label=label, selected=_is_selected(cursor))
        if key == "2" and "all" in label.lower():
            option.description = "Allow all similar actions this session"
        options[key] = option

    def _extract_preview(self) -> str:
        lines: list[str] = []
        in_preview = not self._prompt_target
        for line in self._buffer:
            if not in_preview:
                if self._prompt_target in line:
                    in_preview = True
                continue
            if _OPTION.search(line) or _ALLOW.search(line):
                break
            if not line.strip("─╌-="):
                continue
            if _PANEL.match(line):
                continue
            lines.append(line)
        if len(lines) > _PREVIEW_LIMIT:
            lines = lines[:_PREVIEW_LIMIT] + ["..."]
        return "\n".join(lines)
