"""Tests for watch bindings and presence."""
from __future__ import annotations

import pytest

from agentbridge.engine.backends.base import PromptDetected
from agentbridge.engine.errors import InvalidParamsError, SessionNotFoundError
from agentbridge.engine.models import PendingPermission, PromptOption
from agentbridge.engine.watchers import PresenceTracker, WatchTracker

from conftest import WORKSPACE, wait_until


@pytest.fixture
def presence(publisher):
    return PresenceTracker(publisher)


@pytest.fixture
def tracker(registry, publisher, presence):
    return WatchTracker(registry, publisher, presence)


async def _live_session(registry):
    result = await registry.send("claude", "hello", workspace_id="ws", workspace_path=WORKSPACE)
    return registry.get(result["session_id"])


@pytest.mark.asyncio
async def test_watch_live_session_subscribes_and_reemits_pending(registry, tracker, publisher, factory):
    session = await _live_session(registry)
    factory.created[0].emit(PromptDetected(PendingPermission(
        type="bash_command", options=[PromptOption("1", "Yes"), PromptOption("2", "No")],
    )))
    await wait_until(lambda: session.pending_permission is not None)

    result = await tracker.watch("c1", "ws", WORKSPACE, session.session_id, "claude")

    assert result == {
        "status": "watching",
        "watching": True,
        "workspace_id": "ws",
        "session_id": session.session_id,
    }
    assert ("subscribe", "c1", session.session_id) in publisher.subscriptions
    assert [c for _, c in publisher.targeted("pty_permission")][-1] == "c1"
    assert tracker.watchers(session.session_id) == ["c1"]
    await registry.shutdown()


@pytest.mark.asyncio
async def test_watch_history_session(tracker, history):
    history.add("abc")
    result = await tracker.watch("c1", "ws", WORKSPACE, "abc", "claude")
    assert result["status"] == "watching"
    assert [b.session_id for b in tracker.bindings("c1")] == ["abc"]


@pytest.mark.asyncio
async def test_watch_unknown_session_raises(tracker):
    with pytest.raises(SessionNotFoundError):
        await tracker.watch("c1", "ws", WORKSPACE, "ghost", "claude")
    assert tracker.bindings("c1") == []


@pytest.mark.asyncio
async def test_watch_requires_ids(tracker):
    with pytest.raises(InvalidParamsError):
        await tracker.watch("c1", "", WORKSPACE, "abc", "claude")
    with pytest.raises(InvalidParamsError):
        await tracker.watch("c1", "ws", WORKSPACE, "", "claude")


@pytest.mark.asyncio
async def test_watch_live_session_from_other_workspace_raises(registry, tracker):
    session = await _live_session(registry)
    with pytest.raises(SessionNotFoundError):
        await tracker.watch("c1", "other", "/srv/other", session.session_id, "claude")
    await registry.shutdown()


@pytest.mark.asyncio
async def test_unwatch_removes_exactly_one_binding(tracker, history, publisher):
    for sid in ("a", "b", "c"):
        history.add(sid)
        await tracker.watch("c1", "ws", WORKSPACE, sid, "claude")

    result = await tracker.unwatch("c1", "b")
    assert result["status"] == "unwatched"
    assert result["session_id"] == "b"
    assert [b.session_id for b in tracker.bindings("c1")] == ["a", "c"]

    result = await tracker.unwatch("c1")
    assert result["session_id"] == "c"
    assert [b.session_id for b in tracker.bindings("c1")] == ["a"]
    assert ("unsubscribe", "c1", "c") in publisher.subscriptions


@pytest.mark.asyncio
async def test_rewatch_moves_binding_to_most_recent(tracker, history):
    for sid in ("a", "b"):
        history.add(sid)
        await tracker.watch("c1", "ws", WORKSPACE, sid, "claude")
    await tracker.watch("c1", "ws", WORKSPACE, "a", "claude")

    result = await tracker.unwatch("c1")
    assert result["session_id"] == "a"


@pytest.mark.asyncio
async def test_unwatch_without_bindings(tracker):
    result = await tracker.unwatch("c1")
    assert result["status"] == "not_watching"
    assert result["watching"] is False


@pytest.mark.asyncio
async def test_remap_moves_bindings_and_presence(registry, tracker, presence):
    session = await _live_session(registry)
    temp_id = session.session_id
    await tracker.watch("c1", "ws", WORKSPACE, temp_id, "claude")

    assert await registry.remap(temp_id, "real-1")

    assert [b.session_id for b in tracker.bindings("c1")] == ["real-1"]
    assert tracker.watchers("real-1") == ["c1"]
    assert presence.viewers("real-1") == ["c1"]
    assert presence.viewers(temp_id) == []
    await registry.shutdown()


@pytest.mark.asyncio
async def test_remove_client_releases_every_binding(tracker, history, publisher, presence):
    for sid in ("a", "b"):
        history.add(sid)
        await tracker.watch("c1", "ws", WORKSPACE, sid, "claude")
    await tracker.watch("c2", "ws", WORKSPACE, "a", "claude")
    assert presence.viewers("a") == ["c1", "c2"]

    await tracker.remove_client("c1")

    assert tracker.bindings("c1") == []
    assert tracker.watchers("a") == ["c2"]
    assert presence.viewers("a") == ["c2"]
    left = publisher.of_type("session_left")
    assert {(e.session_id, e.client_id) for e in left} == {("a", "c1"), ("b", "c1")}


def test_presence_publishes_join_and_leave(publisher, presence):
    presence.set_session_focus("c1", "ws", "s1")
    presence.set_session_focus("c1", "ws", "s1")
    presence.set_session_focus("c2", "ws", "s1")
    presence.clear_focus("c1", "s1")
    presence.clear_focus("c1", "s1")

    joined = publisher.of_type("session_joined")
    left = publisher.of_type("session_left")
    assert [(e.client_id, e.viewers) for e in joined] == [("c1", ["c1"]), ("c2", ["c1", "c2"])]
    assert [(e.client_id, e.viewers) for e in left] == [("c1", ["c2"])]
