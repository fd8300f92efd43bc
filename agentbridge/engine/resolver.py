"""Discover the session identity an agent CLI assigns after launch.

A freshly spawned agent only writes its transcript (and thereby reveals
its real session id) some time after the process starts. The resolver
diffs the history index against a snapshot taken at spawn time: first
with a short bounded poll so the initial response can carry the real id,
then with a cancellable background watcher per temporary id.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from agentbridge.engine.history import HistoryEntry, HistoryIndex

if TYPE_CHECKING:
    from agentbridge.engine.registry import SessionRegistry

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Snapshot/diff resolution plus the temp-id -> watcher task map."""

    def __init__(
        self,
        histories: dict[str, HistoryIndex],
        poll_interval: float = 0.2,
        timeout: float = 10.0,
        watch_interval: float = 0.5,
    ) -> None:
        self._histories = histories
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._watch_interval = watch_interval
        self._watchers: dict[str, asyncio.Task] = {}

    def history(self, agent_type: str) -> HistoryIndex | None:
        return self._histories.get(agent_type)

    async def snapshot(self, agent_type: str, workspace_path: str) -> frozenset[str]:
        """Session ids already known for *workspace_path*."""
        index = self._histories.get(agent_type)
        if index is None:
            return frozenset()
        return await asyncio.to_thread(index.session_ids, workspace_path)

    async def resolve_once(
        self, agent_type: str, workspace_path: str, snapshot: frozenset[str],
    ) -> HistoryEntry | None:
        """Newest history entry not present in *snapshot*, if any."""
        index = self._histories.get(agent_type)
        if index is None:
            return None
        await asyncio.to_thread(index.refresh)
        entries = await asyncio.to_thread(index.sessions_for, workspace_path)
        for entry in entries:
            if entry.session_id and entry.session_id not in snapshot:
                return entry
        return None

    async def resolve_new(
        self,
        agent_type: str,
        workspace_path: str,
        snapshot: frozenset[str],
        timeout: float | None = None,
    ) -> HistoryEntry | None:
        """Poll until a new identity appears or *timeout* elapses.

        A timeout is not an error: the caller keeps the temporary id and
        hands off to a background watcher.
        """
        timeout = self._timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            entry = await self.resolve_once(agent_type, workspace_path, snapshot)
            if entry is not None:
                return entry
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    # ── Background watchers ──

    def has_watcher(self, temp_id: str) -> bool:
        return temp_id in self._watchers

    def start_watcher(
        self,
        registry: SessionRegistry,
        temp_id: str,
        agent_type: str,
        workspace_path: str,
        snapshot: frozenset[str],
    ) -> None:
        """Start one watcher for *temp_id*; a second call is a no-op."""
        if temp_id in self._watchers:
            return
        task = asyncio.create_task(
            self._watch(registry, temp_id, agent_type, workspace_path, snapshot),
            name=f"resolve-{temp_id}",
        )
        self._watchers[temp_id] = task
        logger.info("Identity watcher started session=%s workspace=%s", temp_id, workspace_path)

    def stop_watcher(self, temp_id: str) -> None:
        """Cancel and forget the watcher for *temp_id*."""
        task = self._watchers.pop(temp_id, None)
        if task is None:
            return
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.debug("Identity watcher stopped session=%s", temp_id)

    async def shutdown(self) -> None:
        tasks = list(self._watchers.values())
        self._watchers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _watch(
        self,
        registry: SessionRegistry,
        temp_id: str,
        agent_type: str,
        workspace_path: str,
        snapshot: frozenset[str],
    ) -> None:
        try:
            while True:
                await asyncio.sleep(self._watch_interval)
                if registry.get(temp_id) is None:
                    # Remapped elsewhere, or the process exited without ever
                    # writing a transcript; the exit handler reports that.
                    logger.debug("Identity watcher exiting, session gone: %s", temp_id)
                    return
                try:
                    entry = await self.resolve_once(agent_type, workspace_path, snapshot)
                except OSError as exc:
                    logger.warning("Identity watcher scan failed session=%s err=%s", temp_id, exc)
                    continue
                if entry is None:
                    continue
                if await registry.remap(temp_id, entry.session_id):
                    registry.announce_resolution(temp_id, entry)
                return
        finally:
            if self._watchers.get(temp_id) is asyncio.current_task():
                del self._watchers[temp_id]
