"""Fan-out of bridge events to connected clients.

The orchestration core only sees the narrow EventPublisher interface.
EventHub is the in-process implementation used by the HTTP server: one
bounded queue per connected client, plus per-session subscriptions that
the watch tracker maintains.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from agentbridge.adapters.events import (
    BROADCAST_EVENT_TYPES,
    BridgeEvent,
    event_to_dict,
)

logger = logging.getLogger(__name__)


class EventPublisher(abc.ABC):
    """What the core calls to emit typed events."""

    @abc.abstractmethod
    def publish(self, event: BridgeEvent, client_id: str | None = None) -> None:
        """Emit *event*; with *client_id*, deliver to that client only."""

    def subscribe(self, client_id: str, session_id: str) -> None:
        """Route *session_id*'s events to *client_id*."""

    def unsubscribe(self, client_id: str, session_id: str) -> None:
        """Stop routing *session_id*'s events to *client_id*."""

    def remap_session(self, old_session_id: str, new_session_id: str) -> None:
        """Carry subscriptions over when a session identity is resolved."""


class EventHub(EventPublisher):
    """Bounded per-client queues with session-scoped routing."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = {}
        self._subscriptions: dict[str, set[str]] = {}

    # ── Client connections ──

    def connect(self, client_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue = self._queues.get(client_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._maxsize)
            self._queues[client_id] = queue
        logger.info("Client connected client=%s active_clients=%d", client_id, len(self._queues))
        return queue

    def disconnect(self, client_id: str) -> None:
        self._queues.pop(client_id, None)
        for subscribers in self._subscriptions.values():
            subscribers.discard(client_id)
        self._subscriptions = {
            sid: subs for sid, subs in self._subscriptions.items() if subs
        }
        logger.info("Client disconnected client=%s active_clients=%d", client_id, len(self._queues))

    @property
    def client_ids(self) -> list[str]:
        return list(self._queues)

    async def consume(
        self, client_id: str, timeout: float = 30.0,
    ) -> AsyncIterator[dict[str, Any] | None]:
        """Yield queued messages for *client_id*; None on each idle *timeout*."""
        queue = self.connect(client_id)
        while client_id in self._queues:
            try:
                yield await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                yield None

    # ── Session subscriptions ──

    def subscribe(self, client_id: str, session_id: str) -> None:
        self._subscriptions.setdefault(session_id, set()).add(client_id)

    def unsubscribe(self, client_id: str, session_id: str) -> None:
        subscribers = self._subscriptions.get(session_id)
        if not subscribers:
            return
        subscribers.discard(client_id)
        if not subscribers:
            del self._subscriptions[session_id]
            logger.debug("No subscribers left session=%s", session_id)

    def subscribers(self, session_id: str) -> set[str]:
        return set(self._subscriptions.get(session_id, ()))

    def remap_session(self, old_session_id: str, new_session_id: str) -> None:
        moved = self._subscriptions.pop(old_session_id, None)
        if moved:
            self._subscriptions.setdefault(new_session_id, set()).update(moved)

    # ── Publishing ──

    def publish(self, event: BridgeEvent, client_id: str | None = None) -> None:
        payload = event_to_dict(event)
        msg = {"event": payload.pop("event", event.event_type), "data": payload}
        if client_id is not None:
            targets = [client_id]
        elif event.session_id and event.event_type not in BROADCAST_EVENT_TYPES:
            targets = list(self._subscriptions.get(event.session_id, ()))
        else:
            targets = list(self._queues)
        for target in targets:
            queue = self._queues.get(target)
            if queue is None:
                continue
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning(
                    "Client queue full, dropping event=%s client=%s",
                    msg["event"], target,
                )
