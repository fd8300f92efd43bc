"""Strip terminal escape sequences and control bytes from PTY output."""
from __future__ import annotations

import re

# CSI, OSC (BEL or ST terminated), DCS/SOS/PM/APC, charset selects, keypad modes.
ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[PX^_][^\x1b]*\x1b\\"
    r"|\x1b[()][AB012]"
    r"|\x1b[>=]"
)

# Everything below 0x20 except \t \n \r and ESC, plus DEL.
CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f]")


def strip_ansi(text: str) -> str:
    return ANSI_PATTERN.sub("", text)


def sanitize(text: str) -> str:
    """Return *text* with escapes and control bytes removed, LF line endings."""
    if not text:
        return ""
    clean = ANSI_PATTERN.sub("", text)
    clean = CONTROL_PATTERN.sub("", clean)
    # Unrecognized sequences leave a lone ESC behind.
    clean = clean.replace("\x1b", "")
    clean = clean.replace("\r\n", "\n")
    return clean.replace("\r", "\n")


def is_blank(text: str) -> bool:
    return not text or not text.strip()
