"""Method dispatch for the session bridge.

SessionRuntime wires the registry, watch tracker, workspace resolver and
history indexes together, validates request params, and maps every
failure to a BridgeError the transport can serialize.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from agentbridge.adapters.event_hub import EventPublisher
from agentbridge.engine.backends.factory import AGENT_TYPES, BackendFactory
from agentbridge.engine.config import BridgeConfig, WorkspaceResolver
from agentbridge.engine.errors import (
    AgentNotConfiguredError,
    BridgeError,
    InternalBridgeError,
    InvalidParamsError,
    MethodNotFoundError,
)
from agentbridge.engine.history import ClaudeHistoryIndex, CodexHistoryIndex, HistoryIndex
from agentbridge.engine.models import PermissionMode
from agentbridge.engine.registry import SEND_MODES, SessionRegistry
from agentbridge.engine.resolver import IdentityResolver
from agentbridge.engine.watchers import PresenceTracker, WatchTracker

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], str], Awaitable[Any]]

PERMISSION_MODES = tuple(m.value for m in PermissionMode)


def _str_param(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidParamsError(f"'{name}' must be a string")
    return value.strip() if name != "prompt" and name != "input" else value


class SessionRuntime:
    """Owns the core objects and dispatches ``session/*`` methods."""

    def __init__(
        self,
        config: BridgeConfig,
        publisher: EventPublisher,
        registry: SessionRegistry | None = None,
        histories: dict[str, HistoryIndex] | None = None,
        manage_sessions: bool = True,
    ) -> None:
        self.config = config
        self.publisher = publisher
        self.workspaces = WorkspaceResolver(config.workspaces)
        if registry is None and manage_sessions:
            histories = histories or {
                "claude": ClaudeHistoryIndex(config.claude_projects_dir),
                "codex": CodexHistoryIndex(config.codex_sessions_dir),
            }
            resolver = IdentityResolver(
                histories,
                poll_interval=config.resolve_poll_seconds,
                timeout=config.resolve_timeout_seconds,
                watch_interval=config.watch_interval_seconds,
            )
            registry = SessionRegistry(publisher, resolver, BackendFactory(config), config)
        self.registry = registry
        self.presence = PresenceTracker(publisher)
        self.tracker = (
            WatchTracker(registry, publisher, self.presence) if registry is not None else None
        )
        self._methods: dict[str, Handler] = {
            "session/start": self._start,
            "session/send": self._send,
            "session/stop": self._stop,
            "session/input": self._input,
            "session/respond": self._respond,
            "session/watch": self._watch,
            "session/unwatch": self._unwatch,
            "session/list": self._list,
            "session/history": self._history,
        }

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    async def dispatch(self, method: str, params: dict[str, Any] | None, client_id: str) -> Any:
        """Run *method*; every failure surfaces as a BridgeError."""
        handler = self._methods.get(method)
        if handler is None:
            raise MethodNotFoundError(method)
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidParamsError("params must be an object")
        if self.registry is None:
            raise AgentNotConfiguredError("session manager is not configured", method=method)
        try:
            return await handler(params, client_id)
        except BridgeError:
            raise
        except Exception as exc:
            logger.exception("Method failed method=%s client=%s", method, client_id)
            raise InternalBridgeError(str(exc) or type(exc).__name__, {"method": method}) from exc

    async def shutdown(self) -> None:
        if self.registry is not None:
            await self.registry.shutdown()

    async def disconnect(self, client_id: str) -> None:
        if self.tracker is not None:
            await self.tracker.remove_client(client_id)

    # ── Param helpers ──

    def _agent_type(self, params: dict[str, Any]) -> str:
        agent_type = _str_param(params, "agent_type") or self.config.default_agent
        if agent_type not in AGENT_TYPES:
            raise InvalidParamsError(f"agent_type must be one of: {', '.join(AGENT_TYPES)}")
        return agent_type

    def _permission_mode(self, params: dict[str, Any]) -> str:
        mode = _str_param(params, "permission_mode") or PermissionMode.DEFAULT.value
        if mode not in PERMISSION_MODES:
            raise InvalidParamsError(f"permission_mode must be one of: {', '.join(PERMISSION_MODES)}")
        return mode

    def _workspace_path(self, workspace_id: str) -> str:
        path = self.workspaces.resolve(workspace_id)
        if path is None:
            raise InvalidParamsError(f"unknown workspace: {workspace_id}")
        return path

    @staticmethod
    def _required(params: dict[str, Any], name: str) -> str:
        value = _str_param(params, name)
        if not value:
            raise InvalidParamsError(f"'{name}' is required")
        return value

    # ── Handlers ──

    async def _start(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        agent_type = self._agent_type(params)
        workspace_id = self._required(params, "workspace_id")
        return await self.registry.start(
            agent_type,
            workspace_id,
            self._workspace_path(workspace_id),
            session_id=_str_param(params, "session_id") or None,
            permission_mode=self._permission_mode(params),
            client_id=client_id,
        )

    async def _send(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        agent_type = self._agent_type(params)
        prompt = self._required(params, "prompt")
        mode = _str_param(params, "mode") or "new"
        if mode not in SEND_MODES:
            raise InvalidParamsError(f"mode must be one of: {', '.join(SEND_MODES)}")
        workspace_id = _str_param(params, "workspace_id")
        workspace_path = self._workspace_path(workspace_id) if workspace_id else None
        return await self.registry.send(
            agent_type,
            prompt,
            mode=mode,
            session_id=_str_param(params, "session_id") or None,
            workspace_id=workspace_id,
            workspace_path=workspace_path,
            permission_mode=self._permission_mode(params),
        )

    async def _stop(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        return await self.registry.stop(self._required(params, "session_id"))

    async def _input(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        session_id = self._required(params, "session_id")
        key = _str_param(params, "key")
        text = params.get("input")
        if text is not None and not isinstance(text, str):
            raise InvalidParamsError("'input' must be a string")
        if not key and text is None:
            raise InvalidParamsError("either 'input' or 'key' is required")
        return await self.registry.input(
            session_id,
            text=None if key else text,
            key=key or None,
            client_id=client_id,
        )

    async def _respond(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        session_id = self._required(params, "session_id")
        response_type = self._required(params, "type")
        response = params.get("response")
        if response is None or not isinstance(response, str):
            raise InvalidParamsError("'response' is required")
        return await self.registry.respond(session_id, response_type, response, client_id)

    async def _watch(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        workspace_id = self._required(params, "workspace_id")
        session_id = self._required(params, "session_id")
        return await self.tracker.watch(
            client_id,
            workspace_id,
            self._workspace_path(workspace_id),
            session_id,
            self._agent_type(params),
        )

    async def _unwatch(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        return await self.tracker.unwatch(client_id, _str_param(params, "session_id") or None)

    async def _list(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        sessions = self.registry.list_sessions()
        workspace_id = _str_param(params, "workspace_id")
        if workspace_id:
            sessions = [s for s in sessions if s["workspace_id"] == workspace_id]
        return {"sessions": sessions}

    async def _history(self, params: dict[str, Any], client_id: str) -> dict[str, Any]:
        agent_type = self._agent_type(params)
        workspace_id = self._required(params, "workspace_id")
        entries = await self.registry.history(agent_type, self._workspace_path(workspace_id))
        return {
            "workspace_id": workspace_id,
            "agent_type": agent_type,
            "sessions": [e.to_dict() for e in entries],
        }
