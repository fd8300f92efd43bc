"""Core data models for the session orchestration core.

All dataclasses and enums shared across the registry, backends and
watch tracker. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentbridge.engine.backends.base import Backend


class SessionStatus(str, Enum):
    """Session lifecycle states. Transition rules live in registry.py."""
    STARTING = "starting"
    RUNNING = "running"
    WAITING_PERMISSION = "waiting_permission"
    WAITING_QUESTION = "waiting_question"
    IDLE = "idle"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.FAILED)


class BackendKind(str, Enum):
    """How the agent process is driven."""
    STRUCTURED = "structured"
    INTERACTIVE = "interactive"


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes, plus the PTY mode."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"
    INTERACTIVE = "interactive"


class PtyState(str, Enum):
    """Terminal activity state reported with output and state events."""
    IDLE = "idle"
    THINKING = "thinking"
    PERMISSION = "permission"
    QUESTION = "question"
    ERROR = "error"


def make_temp_id(agent_type: str) -> str:
    return f"{agent_type}-temp-{uuid.uuid4()}"


def is_temp_id(session_id: str) -> bool:
    return "-temp-" in session_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PromptOption:
    key: str
    label: str
    description: str = ""
    selected: bool = False


@dataclass
class PendingPermission:
    """Snapshot of a prompt awaiting a user decision."""
    type: str
    target: str = ""
    description: str = ""
    preview: str = ""
    options: list[PromptOption] = field(default_factory=list)

    @property
    def is_question(self) -> bool:
        return self.type == "question"

    def options_as_dicts(self) -> list[dict[str, Any]]:
        return [asdict(o) for o in self.options]


@dataclass
class Session:
    """One workspace-scoped interaction with an agent backend.

    Owned by SessionRegistry; the backend adapter is owned by the
    session and released when its process exits.
    """
    session_id: str
    workspace_id: str
    workspace_path: str
    agent_type: str
    kind: BackendKind
    backend: Backend | None = field(default=None, repr=False)
    status: SessionStatus = SessionStatus.STARTING
    pending_permission: PendingPermission | None = None
    temporary: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    # Background task chain owned by this session.
    pump_task: asyncio.Task | None = field(default=None, repr=False)
    exit_task: asyncio.Task | None = field(default=None, repr=False)
    stopping: bool = False
    # Id the session was registered under; the resolver watcher is keyed by it.
    origin_id: str = ""
    # Prompt parser for interactive sessions (None for structured ones).
    parser: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.origin_id:
            self.origin_id = self.session_id

    @property
    def live(self) -> bool:
        return not self.status.terminal and not self.stopping

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "workspace_path": self.workspace_path,
            "agent_type": self.agent_type,
            "kind": self.kind.value,
            "status": self.status.value,
            "temporary": self.temporary,
            "has_pending_permission": self.pending_permission is not None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class WatchInfo:
    """A client's subscription to one session's live event stream."""
    workspace_id: str
    session_id: str
    agent_type: str = ""
    watching: bool = True
    watched_at: datetime = field(default_factory=_utcnow)
