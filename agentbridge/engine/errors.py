"""Exception hierarchy for the session orchestration core.

Every error a method can return to a client is a BridgeError subclass
carrying a JSON-RPC error code and an optional data payload.
"""
from __future__ import annotations

import os
from typing import Any

# JSON-RPC 2.0 codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Bridge-specific codes
AGENT_NOT_CONFIGURED = -32004
SESSION_NOT_FOUND = -32010


class BridgeError(Exception):
    """Base exception for all errors surfaced to clients."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str, data: dict[str, Any] | None = None):
        self.message = message
        self.data = data
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        err: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            err["data"] = self.data
        return err


class InvalidParamsError(BridgeError):
    """Missing or malformed request fields."""
    code = INVALID_PARAMS


class MethodNotFoundError(BridgeError):
    """No handler is registered for the requested method."""
    code = METHOD_NOT_FOUND

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Method not found: {method}")


class AgentNotConfiguredError(BridgeError):
    """Agent CLI is missing or the session manager is not wired."""
    code = AGENT_NOT_CONFIGURED

    def __init__(
        self,
        message: str,
        agent_type: str | None = None,
        method: str | None = None,
    ):
        self.agent_type = agent_type
        self.method = method
        data: dict[str, Any] = {}
        if agent_type:
            data["agent_type"] = agent_type
        if method:
            data["method"] = method
        super().__init__(message, data or None)


class SessionNotFoundError(BridgeError):
    """Identity does not resolve to a live or historical session."""
    code = SESSION_NOT_FOUND

    def __init__(self, message: str, session_id: str | None = None):
        self.session_id = session_id
        super().__init__(
            message, {"session_id": session_id} if session_id else None,
        )


class InternalBridgeError(BridgeError):
    """Process launch or I/O failure not otherwise classified."""
    code = INTERNAL_ERROR


_NOT_FOUND_MARKERS = (
    "executable file not found",
    "no such file or directory",
    "command not found",
    "not found in $path",
)


def is_executable_missing(exc: BaseException, executable: str | None = None) -> bool:
    """True when *exc* means the agent executable could not be located.

    A FileNotFoundError naming some other path (a missing working
    directory, say) is not a missing executable.
    """
    if isinstance(exc, FileNotFoundError):
        if exc.filename is None or not executable:
            return True
        return os.path.basename(str(exc.filename)) == os.path.basename(executable)
    text = str(exc).lower()
    return any(marker in text for marker in _NOT_FOUND_MARKERS)


def classify_launch_error(
    exc: BaseException, agent_type: str, method: str, executable: str | None = None,
) -> BridgeError:
    """Map a backend launch failure to the error a client should see.

    A missing executable needs an install, not a retry, so it is reported
    as AgentNotConfigured rather than InternalError.
    """
    if isinstance(exc, BridgeError):
        return exc
    if is_executable_missing(exc, executable):
        return AgentNotConfiguredError(
            f"{agent_type} CLI is not installed or not available on PATH",
            agent_type=agent_type,
            method=method,
        )
    return InternalBridgeError(
        f"failed to start {agent_type}: {exc}",
        {"agent_type": agent_type, "method": method},
    )
