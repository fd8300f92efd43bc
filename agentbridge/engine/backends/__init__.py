"""Process backends for agent CLIs."""
from .base import (
    AssistantText,
    Backend,
    BackendOutput,
    ExitOutcome,
    LaunchSpec,
    PromptDetected,
    TerminalChunk,
    TurnCompleted,
)
from .factory import AGENT_TYPES, BackendFactory
from .pty_backend import PtyBackend
from .structured import StructuredBackend

__all__ = [
    "AGENT_TYPES",
    "AssistantText",
    "Backend",
    "BackendFactory",
    "BackendOutput",
    "ExitOutcome",
    "LaunchSpec",
    "PromptDetected",
    "PtyBackend",
    "StructuredBackend",
    "TerminalChunk",
    "TurnCompleted",
]
