"""Which clients are watching which sessions.

WatchTracker keeps per-client watch bindings, routes the session's event
stream to its watchers, and reports focus changes to a FocusProvider.
PresenceTracker is the built-in FocusProvider: it publishes
session_joined / session_left with the current viewer list.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from typing import TYPE_CHECKING, Any

from agentbridge.adapters.event_hub import EventPublisher
from agentbridge.adapters.events import SessionJoined, SessionLeft
from agentbridge.engine.errors import InvalidParamsError, SessionNotFoundError
from agentbridge.engine.history import paths_match
from agentbridge.engine.models import WatchInfo

if TYPE_CHECKING:
    from agentbridge.engine.registry import SessionRegistry

logger = logging.getLogger(__name__)


class FocusProvider(abc.ABC):
    """Receives which session each client is looking at."""

    @abc.abstractmethod
    def set_session_focus(self, client_id: str, workspace_id: str, session_id: str) -> None:
        ...

    @abc.abstractmethod
    def clear_focus(self, client_id: str, session_id: str) -> None:
        ...

    def remap(self, old_session_id: str, new_session_id: str) -> None:
        """Carry focus state over to a resolved session id."""


class PresenceTracker(FocusProvider):
    """Viewer lists per session, announced as presence events."""

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher
        # session_id -> (workspace_id, ordered viewer client ids)
        self._viewers: dict[str, tuple[str, list[str]]] = {}

    def viewers(self, session_id: str) -> list[str]:
        entry = self._viewers.get(session_id)
        return list(entry[1]) if entry else []

    def set_session_focus(self, client_id: str, workspace_id: str, session_id: str) -> None:
        ws, viewers = self._viewers.setdefault(session_id, (workspace_id, []))
        if client_id in viewers:
            return
        viewers.append(client_id)
        self._publisher.publish(SessionJoined(
            session_id=session_id,
            workspace_id=ws,
            client_id=client_id,
            viewers=list(viewers),
        ))

    def clear_focus(self, client_id: str, session_id: str) -> None:
        entry = self._viewers.get(session_id)
        if entry is None or client_id not in entry[1]:
            return
        ws, viewers = entry
        viewers.remove(client_id)
        if not viewers:
            del self._viewers[session_id]
        self._publisher.publish(SessionLeft(
            session_id=session_id,
            workspace_id=ws,
            client_id=client_id,
            viewers=list(viewers),
        ))

    def remap(self, old_session_id: str, new_session_id: str) -> None:
        entry = self._viewers.pop(old_session_id, None)
        if entry is None:
            return
        ws, viewers = self._viewers.setdefault(new_session_id, (entry[0], []))
        for client_id in entry[1]:
            if client_id not in viewers:
                viewers.append(client_id)


class WatchTracker:
    """Per-client watch bindings, kept in watch order."""

    def __init__(
        self,
        registry: SessionRegistry,
        publisher: EventPublisher,
        focus: FocusProvider | None = None,
    ) -> None:
        self._registry = registry
        self._publisher = publisher
        self._focus = focus
        # client_id -> {session_id -> WatchInfo}; dict order is watch order
        self._bindings: dict[str, dict[str, WatchInfo]] = {}
        self._lock = asyncio.Lock()
        registry.add_remap_listener(self.remap)

    def bindings(self, client_id: str) -> list[WatchInfo]:
        return list(self._bindings.get(client_id, {}).values())

    def watchers(self, session_id: str) -> list[str]:
        return [c for c, b in self._bindings.items() if session_id in b]

    async def watch(
        self,
        client_id: str,
        workspace_id: str,
        workspace_path: str,
        session_id: str,
        agent_type: str,
    ) -> dict[str, Any]:
        if not workspace_id:
            raise InvalidParamsError("workspace_id is required")
        if not session_id:
            raise InvalidParamsError("session_id is required")

        session = self._registry.get(session_id)
        if session is None or session.status.terminal:
            session = None
            entries = await self._registry.history(agent_type, workspace_path)
            if not any(e.session_id == session_id for e in entries):
                raise SessionNotFoundError(f"session not found: {session_id}", session_id)
        elif workspace_path and not paths_match(session.workspace_path, workspace_path):
            raise SessionNotFoundError(
                f"session {session_id} does not belong to workspace {workspace_id}", session_id,
            )

        async with self._lock:
            bindings = self._bindings.setdefault(client_id, {})
            # Re-watching moves the binding to the most recent position.
            bindings.pop(session_id, None)
            bindings[session_id] = WatchInfo(
                workspace_id=workspace_id,
                session_id=session_id,
                agent_type=agent_type,
            )
        self._publisher.subscribe(client_id, session_id)
        if self._focus is not None:
            self._focus.set_session_focus(client_id, workspace_id, session_id)
        if session is not None:
            self._registry.reemit_pending(session, client_id)
        logger.info("Client watching client=%s session=%s workspace=%s", client_id, session_id, workspace_id)
        return {
            "status": "watching",
            "watching": True,
            "workspace_id": workspace_id,
            "session_id": session_id,
        }

    async def unwatch(self, client_id: str, session_id: str | None = None) -> dict[str, Any]:
        """Remove one binding: *session_id*'s, or the client's most recent."""
        async with self._lock:
            bindings = self._bindings.get(client_id) or {}
            if session_id:
                info = bindings.pop(session_id, None)
            elif bindings:
                info = bindings.pop(next(reversed(bindings)))
            else:
                info = None
            if not bindings:
                self._bindings.pop(client_id, None)
        if info is None:
            return {
                "status": "not_watching",
                "watching": False,
                "workspace_id": "",
                "session_id": session_id or "",
            }
        self._release(client_id, info)
        return {
            "status": "unwatched",
            "watching": False,
            "workspace_id": info.workspace_id,
            "session_id": info.session_id,
        }

    async def remove_client(self, client_id: str) -> None:
        async with self._lock:
            bindings = self._bindings.pop(client_id, {})
        for info in bindings.values():
            self._release(client_id, info)
        if bindings:
            logger.info("Client bindings cleared client=%s count=%d", client_id, len(bindings))

    def _release(self, client_id: str, info: WatchInfo) -> None:
        self._publisher.unsubscribe(client_id, info.session_id)
        if self._focus is not None:
            self._focus.clear_focus(client_id, info.session_id)
        if not self.watchers(info.session_id):
            logger.info("Last watcher left session=%s", info.session_id)

    async def remap(self, old_session_id: str, new_session_id: str) -> None:
        async with self._lock:
            for bindings in self._bindings.values():
                info = bindings.pop(old_session_id, None)
                if info is None:
                    continue
                info.session_id = new_session_id
                bindings[new_session_id] = info
        if self._focus is not None:
            self._focus.remap(old_session_id, new_session_id)
