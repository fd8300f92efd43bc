"""Keystroke encoding for pseudo-terminal input."""
from __future__ import annotations

from agentbridge.engine.errors import InvalidParamsError

KEY_SEQUENCES: dict[str, str] = {
    "enter": "\r",
    "return": "\r",
    "escape": "\x1b",
    "esc": "\x1b",
    "up": "\x1b[A",
    "down": "\x1b[B",
    "right": "\x1b[C",
    "left": "\x1b[D",
    "tab": "\t",
    "backspace": "\x7f",
    "delete": "\x1b[3~",
    "home": "\x1b[H",
    "end": "\x1b[F",
    "pageup": "\x1b[5~",
    "pagedown": "\x1b[6~",
    "space": " ",
}

# Keys that answer whatever prompt is on screen rather than navigate it.
SUBMIT_KEYS = frozenset({"enter", "return", "escape", "esc"})

_YES = {"yes", "y", "true", "allow", "approved", "approve"}
_NO = {"no", "n", "false", "deny", "denied", "reject"}


def normalize_key(key: str) -> str:
    return key.strip().lower()


def encode_key(key: str) -> str:
    """Return the control sequence for a named key."""
    name = normalize_key(key)
    try:
        return KEY_SEQUENCES[name]
    except KeyError:
        raise InvalidParamsError(f"unknown key: {key}") from None


def encode_input(text: str) -> str:
    """Encode free text typed into the terminal.

    A key name is translated to its sequence. Text that starts with a
    control byte or already ends in a line terminator is sent as is;
    anything else is submitted with a trailing carriage return.
    """
    if not text:
        return "\r"
    sequence = KEY_SEQUENCES.get(normalize_key(text))
    if sequence is not None:
        return sequence
    first = ord(text[0])
    if first < 0x20 or first == 0x7F:
        return text
    if text.endswith(("\r", "\n")):
        return text
    return text + "\r"


def normalize_permission_response(response: str) -> str:
    """Collapse yes/no synonyms to ``y`` / ``n``; pass anything else through."""
    value = response.strip().lower()
    if value in _YES:
        return "y"
    if value in _NO:
        return "n"
    return response
