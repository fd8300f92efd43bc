"""Session orchestration core for agent CLIs."""
from .models import (
    BackendKind,
    PendingPermission,
    PermissionMode,
    PromptOption,
    PtyState,
    Session,
    SessionStatus,
    WatchInfo,
)
from .config import BridgeConfig, WorkspaceResolver
from .errors import (
    AgentNotConfiguredError,
    BridgeError,
    InternalBridgeError,
    InvalidParamsError,
    MethodNotFoundError,
    SessionNotFoundError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "SessionRegistry",
    "SessionRuntime",
    "IdentityResolver",
    "WatchTracker",
    "PresenceTracker",
    # Models
    "BackendKind",
    "PendingPermission",
    "PermissionMode",
    "PromptOption",
    "PtyState",
    "Session",
    "SessionStatus",
    "WatchInfo",
    # Config
    "BridgeConfig",
    "WorkspaceResolver",
    # History (lazy import)
    "ClaudeHistoryIndex",
    "CodexHistoryIndex",
    # Errors
    "AgentNotConfiguredError",
    "BridgeError",
    "InternalBridgeError",
    "InvalidParamsError",
    "MethodNotFoundError",
    "SessionNotFoundError",
]


def __getattr__(name: str):
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "SessionRuntime":
        from .runtime import SessionRuntime
        return SessionRuntime
    if name == "IdentityResolver":
        from .resolver import IdentityResolver
        return IdentityResolver
    if name == "WatchTracker":
        from .watchers import WatchTracker
        return WatchTracker
    if name == "PresenceTracker":
        from .watchers import PresenceTracker
        return PresenceTracker
    if name == "ClaudeHistoryIndex":
        from .history import ClaudeHistoryIndex
        return ClaudeHistoryIndex
    if name == "CodexHistoryIndex":
        from .history import CodexHistoryIndex
        return CodexHistoryIndex
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
