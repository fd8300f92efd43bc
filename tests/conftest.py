"""Shared fakes for session core tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Callable

import pytest

from agentbridge.adapters.event_hub import EventPublisher
from agentbridge.adapters.events import BridgeEvent
from agentbridge.engine.backends.base import Backend, BackendOutput, ExitOutcome, LaunchSpec
from agentbridge.engine.config import BridgeConfig
from agentbridge.engine.history import HistoryEntry, HistoryIndex, paths_match
from agentbridge.engine.models import BackendKind
from agentbridge.engine.registry import SessionRegistry
from agentbridge.engine.resolver import IdentityResolver

WORKSPACE = "/tmp/agentbridge-ws"


class RecordingPublisher(EventPublisher):
    def __init__(self) -> None:
        self.events: list[tuple[BridgeEvent, str | None]] = []
        self.subscriptions: list[tuple[str, str, str]] = []
        self.remaps: list[tuple[str, str]] = []

    def publish(self, event: BridgeEvent, client_id: str | None = None) -> None:
        self.events.append((event, client_id))

    def subscribe(self, client_id: str, session_id: str) -> None:
        self.subscriptions.append(("subscribe", client_id, session_id))

    def unsubscribe(self, client_id: str, session_id: str) -> None:
        self.subscriptions.append(("unsubscribe", client_id, session_id))

    def remap_session(self, old_session_id: str, new_session_id: str) -> None:
        self.remaps.append((old_session_id, new_session_id))

    def of_type(self, event_type: str) -> list[BridgeEvent]:
        return [e for e, _ in self.events if e.event_type == event_type]

    def targeted(self, event_type: str) -> list[tuple[BridgeEvent, str | None]]:
        return [(e, c) for e, c in self.events if e.event_type == event_type]


class FakeBackend(Backend):
    """Backend driven entirely by the test."""

    def __init__(
        self,
        spec: LaunchSpec,
        kind: BackendKind = BackendKind.INTERACTIVE,
        fail: BaseException | None = None,
    ) -> None:
        super().__init__(spec)
        self.kind = kind
        self.inputs: list[str] = []
        self.stops: list[bool] = []
        self.on_input: Callable[[str], None] | None = None
        self._fail = fail
        self._outputs: asyncio.Queue[BackendOutput | None] = asyncio.Queue()
        self._exit: asyncio.Future[ExitOutcome] | None = None

    @property
    def running(self) -> bool:
        return self._exit is not None and not self._exit.done()

    async def start(self) -> None:
        await asyncio.sleep(0)
        if self._fail is not None:
            raise self._fail
        self._exit = asyncio.get_running_loop().create_future()

    async def stop(self, force: bool = False) -> None:
        self.stops.append(force)
        self.exit(ExitOutcome(returncode=-9 if force else -2, interrupted=True))

    async def deliver_input(self, data: str) -> None:
        if self.on_input is not None:
            self.on_input(data)
        self.inputs.append(data)

    def emit(self, item: BackendOutput) -> None:
        self._outputs.put_nowait(item)

    def exit(self, outcome: ExitOutcome) -> None:
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(outcome)

    async def stream_output(self) -> AsyncIterator[BackendOutput]:
        while True:
            item = await self._outputs.get()
            if item is None:
                return
            yield item

    async def wait(self) -> ExitOutcome:
        assert self._exit is not None
        outcome = await self._exit
        self._outputs.put_nowait(None)
        return outcome


class FakeFactory:
    def __init__(self, kind: BackendKind = BackendKind.INTERACTIVE) -> None:
        self.kind = kind
        self.fail: BaseException | None = None
        self.created: list[FakeBackend] = []

    def kind_for(self, agent_type: str, permission_mode: str | None = None) -> BackendKind:
        return self.kind

    def create(self, spec: LaunchSpec, kind: BackendKind) -> FakeBackend:
        backend = FakeBackend(spec, kind, self.fail)
        self.created.append(backend)
        return backend


class FakeHistory(HistoryIndex):
    """In-memory history index."""

    def __init__(self, entries: list[HistoryEntry] | None = None) -> None:
        super().__init__()
        self.entries = list(entries or [])

    def add(self, session_id: str, project_path: str = WORKSPACE, age_seconds: int = 0) -> HistoryEntry:
        entry = HistoryEntry(
            session_id=session_id,
            full_path=f"/history/{session_id}.jsonl",
            project_path=project_path,
            summary=f"summary of {session_id}",
            message_count=2,
            last_updated=datetime.now(timezone.utc) - timedelta(seconds=age_seconds),
        )
        self.entries.append(entry)
        return entry

    def _candidate_files(self, workspace_path: str | None) -> list[Path]:
        return []

    def _parse(self, path: Path) -> HistoryEntry | None:
        return None

    def sessions_for(self, workspace_path: str) -> list[HistoryEntry]:
        matches = [e for e in self.entries if paths_match(e.project_path, workspace_path)]
        return sorted(matches, key=lambda e: e.last_updated, reverse=True)

    def find(self, session_id: str) -> HistoryEntry | None:
        return next((e for e in self.entries if e.session_id == session_id), None)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(
        resolve_timeout_seconds=0.05,
        resolve_poll_seconds=0.01,
        watch_interval_seconds=0.01,
        stop_grace_seconds=0.05,
        flush_interval_seconds=0.01,
    )


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def history() -> FakeHistory:
    return FakeHistory()


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def resolver(history: FakeHistory, config: BridgeConfig) -> IdentityResolver:
    return IdentityResolver(
        {"claude": history, "codex": FakeHistory()},
        poll_interval=config.resolve_poll_seconds,
        timeout=config.resolve_timeout_seconds,
        watch_interval=config.watch_interval_seconds,
    )


@pytest.fixture
def registry(
    publisher: RecordingPublisher,
    resolver: IdentityResolver,
    factory: FakeFactory,
    config: BridgeConfig,
) -> SessionRegistry:
    return SessionRegistry(publisher, resolver, factory, config)
