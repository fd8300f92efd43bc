"""Event types published by the session orchestration core.

Each event is a typed dataclass; event_to_dict() produces the wire
shape ``{"event": <type>, ...fields}`` consumed by the transport.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class BridgeEvent:
    """Base event from the orchestration core."""
    event_type: str = ""
    session_id: str | None = None
    workspace_id: str | None = None


@dataclass
class SessionIDResolved(BridgeEvent):
    event_type: str = "session_id_resolved"
    old_session_id: str = ""
    new_session_id: str = ""
    path: str = ""


@dataclass
class SessionIDFailed(BridgeEvent):
    event_type: str = "session_id_failed"
    reason: str = ""
    message: str = ""


@dataclass
class PtyOutput(BridgeEvent):
    event_type: str = "pty_output"
    clean_text: str = ""
    raw_text: str = ""
    state: str = "thinking"


@dataclass
class PtyState(BridgeEvent):
    event_type: str = "pty_state"
    state: str = "idle"
    waiting_for_input: bool = False
    prompt_type: str | None = None


@dataclass
class PtyPermission(BridgeEvent):
    event_type: str = "pty_permission"
    type: str = ""
    target: str = ""
    description: str = ""
    preview: str = ""
    options: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PtyPermissionResolved(BridgeEvent):
    event_type: str = "pty_permission_resolved"
    resolved_by: str | None = None
    input: str = ""


@dataclass
class ClaudeMessage(BridgeEvent):
    event_type: str = "claude_message"
    role: str = "assistant"
    text: str = ""
    is_synthetic: bool = False
    stop_reason: str | None = None


@dataclass
class SessionStopped(BridgeEvent):
    event_type: str = "session_stopped"
    exit_code: int | None = None
    error: str | None = None


@dataclass
class SessionJoined(BridgeEvent):
    event_type: str = "session_joined"
    client_id: str = ""
    viewers: list[str] = field(default_factory=list)


@dataclass
class SessionLeft(BridgeEvent):
    event_type: str = "session_left"
    client_id: str = ""
    viewers: list[str] = field(default_factory=list)


# Delivered to every connected client, not only the session's watchers.
BROADCAST_EVENT_TYPES = frozenset({
    "session_id_resolved",
    "session_id_failed",
    "session_stopped",
    "pty_permission_resolved",
    "session_joined",
    "session_left",
})


def event_to_dict(event: BridgeEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" on the wire
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d
