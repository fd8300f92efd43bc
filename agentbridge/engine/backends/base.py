"""Abstract base for process backend adapters.

Each backend wraps one way of driving an agent CLI:
- StructuredBackend: Claude Agent SDK (framed messages, query())
- PtyBackend: any agent CLI attached to a pseudo-terminal

The registry only uses the capability set defined here. wait() returns
an ExitOutcome the registry matches on instead of taking a completion
callback.
"""
from __future__ import annotations

import abc
import logging
import shutil
from dataclasses import dataclass, field
from typing import AsyncIterator, Union

from agentbridge.engine.models import BackendKind, PendingPermission

logger = logging.getLogger(__name__)


@dataclass
class LaunchSpec:
    """Everything a backend needs to start one session."""
    agent_type: str
    session_id: str
    workspace_path: str
    prompt: str | None = None
    resume_id: str | None = None
    permission_mode: str = "default"
    command: list[str] = field(default_factory=list)


@dataclass
class ExitOutcome:
    """How a backend process ended."""
    returncode: int | None = None
    error: str | None = None
    # True when the exit followed an interrupt/kill we sent.
    interrupted: bool = False
    # Identity the backend itself reported (structured backends only).
    reported_session_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and (self.returncode in (0, None) or self.interrupted)


# ── Output records yielded by stream_output() ──


@dataclass
class TerminalChunk:
    """Raw decoded bytes read from a pseudo-terminal."""
    text: str


@dataclass
class AssistantText:
    """A framed assistant message."""
    text: str
    role: str = "assistant"


@dataclass
class PromptDetected:
    """The backend is blocked on a permission or question."""
    permission: PendingPermission


@dataclass
class TurnCompleted:
    """The backend finished answering the latest prompt."""
    result: str = ""
    is_error: bool = False
    session_id: str | None = None


BackendOutput = Union[TerminalChunk, AssistantText, PromptDetected, TurnCompleted]


class Backend(abc.ABC):
    """Capability set shared by every backend kind."""

    kind: BackendKind

    def __init__(self, spec: LaunchSpec) -> None:
        self.spec = spec
        self.session_id = spec.session_id

    @property
    @abc.abstractmethod
    def running(self) -> bool:
        """True while the backend process is alive."""

    @abc.abstractmethod
    async def start(self) -> None:
        """Launch the backend. Raises on launch failure."""

    @abc.abstractmethod
    async def stop(self, force: bool = False) -> None:
        """Interrupt the backend; with *force*, kill it."""

    @abc.abstractmethod
    async def deliver_input(self, data: str) -> None:
        """Send encoded input (keystrokes or a message) to the backend."""

    @abc.abstractmethod
    def stream_output(self) -> AsyncIterator[BackendOutput]:
        """Yield output records until the backend's output ends."""

    @abc.abstractmethod
    async def wait(self) -> ExitOutcome:
        """Wait for the backend to exit and release its resources."""


def resolve_command(command: str, fallback: str | None = None) -> str:
    """Resolve an agent binary by preferring *command*, then *fallback*.

    An unresolvable command is returned unchanged so the launch error
    names what was configured.
    """
    if command and shutil.which(command):
        return command
    if fallback and shutil.which(fallback):
        logger.debug("Command %s not found; falling back to %s", command, fallback)
        return fallback
    return command or (fallback or "")
