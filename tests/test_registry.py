"""Tests for SessionRegistry: start/send/stop/input/respond and exit handling."""
from __future__ import annotations

import asyncio

import pytest

from agentbridge.engine.backends.base import (
    AssistantText,
    ExitOutcome,
    PromptDetected,
    TerminalChunk,
    TurnCompleted,
)
from agentbridge.engine.errors import (
    AGENT_NOT_CONFIGURED,
    AgentNotConfiguredError,
    InternalBridgeError,
    InvalidParamsError,
    SessionNotFoundError,
)
from agentbridge.engine.models import (
    BackendKind,
    PendingPermission,
    PromptOption,
    SessionStatus,
    is_temp_id,
)

from conftest import WORKSPACE, wait_until


def _bash_prompt() -> PendingPermission:
    return PendingPermission(
        type="bash_command",
        target="npm test",
        description="Claude wants to run a command",
        options=[
            PromptOption("1", "Yes", selected=True),
            PromptOption("2", "Yes, and don't ask again"),
            PromptOption("3", "No, and tell Claude what to do differently"),
        ],
    )


async def _spawn(registry, prompt: str = "hello"):
    result = await registry.send("claude", prompt, workspace_id="ws", workspace_path=WORKSPACE)
    return registry.get(result["session_id"]), result


# ── start ──


@pytest.mark.asyncio
async def test_start_with_unknown_session_id_returns_not_found(registry, factory):
    result = await registry.start("claude", "ws", WORKSPACE, session_id="does-not-exist")

    assert result["status"] == "not_found"
    assert result["session_id"] == ""
    assert result["source"] == ""
    assert "does-not-exist" in result["message"]
    assert registry.list_sessions() == []
    assert factory.created == []


@pytest.mark.asyncio
async def test_start_attaches_latest_history_entry(registry, history, factory):
    history.add("older", age_seconds=60)
    history.add("newest")

    result = await registry.start("claude", "ws", WORKSPACE)

    assert result["status"] == "attached"
    assert result["source"] == "history"
    assert result["session_id"] == "newest"
    assert factory.created == []


@pytest.mark.asyncio
async def test_start_with_history_id_attaches(registry, history):
    history.add("abc")
    result = await registry.start("claude", "ws", WORKSPACE, session_id="abc")
    assert result["source"] == "history"
    assert result["path"] == "/history/abc.jsonl"


@pytest.mark.asyncio
async def test_start_spawns_temporary_session_and_starts_watcher(registry, resolver, factory):
    result = await registry.start("claude", "ws", WORKSPACE)

    assert result["status"] == "started"
    assert result["source"] == "managed"
    assert result["temporary"] is True
    temp_id = result["session_id"]
    assert temp_id.startswith("claude-temp-")
    assert len(factory.created) == 1
    assert resolver.has_watcher(temp_id)

    await registry.shutdown()


@pytest.mark.asyncio
async def test_start_attaches_live_session_and_reemits_pending(registry, publisher, factory):
    session, _ = await _spawn(registry)
    factory.created[0].emit(PromptDetected(_bash_prompt()))
    await wait_until(lambda: session.pending_permission is not None)
    publisher.events.clear()

    result = await registry.start("claude", "ws", WORKSPACE, client_id="c1")

    assert result["status"] == "attached"
    assert result["source"] == "managed"
    assert result["has_pending_permission"] is True
    assert [(e.type, c) for e, c in publisher.targeted("pty_permission")] == [("bash_command", "c1")]
    assert len(factory.created) == 1

    await registry.shutdown()


# ── identity resolution ──


@pytest.mark.asyncio
async def test_watcher_remaps_when_transcript_appears(registry, history, publisher):
    session, result = await _spawn(registry)
    temp_id = result["session_id"]

    history.add("real-session-1")
    await wait_until(lambda: registry.get("real-session-1") is not None)

    assert registry.get(temp_id) is None
    assert session.session_id == "real-session-1"
    assert session.temporary is False
    assert session.backend.session_id == "real-session-1"
    assert publisher.remaps == [(temp_id, "real-session-1")]
    resolved = publisher.of_type("session_id_resolved")
    assert len(resolved) == 1
    assert resolved[0].old_session_id == temp_id
    assert resolved[0].new_session_id == "real-session-1"
    assert resolved[0].workspace_id == "ws"

    await registry.shutdown()


@pytest.mark.asyncio
async def test_remap_is_idempotent(registry, publisher):
    session, result = await _spawn(registry)
    temp_id = result["session_id"]

    assert await registry.remap(temp_id, "real-1") is True
    assert await registry.remap(temp_id, "real-1") is False
    assert await registry.remap("real-1", "real-1") is False
    assert await registry.remap("", "real-2") is False
    assert registry.get("real-1") is session
    assert publisher.remaps == [(temp_id, "real-1")]

    await registry.shutdown()


@pytest.mark.asyncio
async def test_remap_refuses_id_owned_by_another_session(registry, history):
    history.add("resumed")
    first, _ = await _spawn(registry)
    await registry.send("claude", "again", session_id="resumed", workspace_id="ws", workspace_path=WORKSPACE)

    assert await registry.remap(first.session_id, "resumed") is False
    assert is_temp_id(first.session_id)

    await registry.shutdown()


@pytest.mark.asyncio
async def test_structured_turn_result_resolves_identity(registry, factory, publisher, resolver):
    factory.kind = BackendKind.STRUCTURED
    session, result = await _spawn(registry)
    temp_id = result["session_id"]
    assert resolver.has_watcher(temp_id)

    factory.created[0].emit(AssistantText("Hi there"))
    factory.created[0].emit(TurnCompleted(result="Hi there", session_id="sdk-42"))
    await wait_until(lambda: registry.get("sdk-42") is not None)

    assert session.status == SessionStatus.IDLE
    messages = publisher.of_type("claude_message")
    assert [m.text for m in messages] == ["Hi there"]
    assert publisher.of_type("session_id_resolved")[0].new_session_id == "sdk-42"
    await wait_until(lambda: not resolver.has_watcher(temp_id))

    await registry.shutdown()


# ── send ──


@pytest.mark.asyncio
async def test_concurrent_start_spawns_exactly_one_session(registry, factory):
    first, second = await asyncio.gather(
        registry.start("claude", "ws", WORKSPACE),
        registry.start("claude", "ws", WORKSPACE),
    )

    assert len(factory.created) == 1
    assert first["session_id"] == second["session_id"]
    assert sorted([first["status"], second["status"]]) == ["attached", "started"]
    assert len(registry.list_sessions()) == 1

    await registry.shutdown()


@pytest.mark.asyncio
async def test_concurrent_send_new_spawns_exactly_one_session(registry, factory):
    first, second = await asyncio.gather(
        registry.send("claude", "hello", workspace_id="ws", workspace_path=WORKSPACE),
        registry.send("claude", "again", workspace_id="ws", workspace_path=WORKSPACE),
    )

    assert len(factory.created) == 1
    assert first["delivery"] == "new_process"
    assert first["auto_created"] is True
    assert second["delivery"] == "pty_input"
    assert second["session_id"] == first["session_id"]
    assert factory.created[0].inputs == ["again\r"]
    assert factory.created[0].spec.prompt == "hello"

    await registry.shutdown()


@pytest.mark.asyncio
async def test_resume_sends_queued_on_the_lock_share_one_session(registry, history, factory):
    factory.kind = BackendKind.STRUCTURED
    history.add("abc")

    async with registry._lock:
        sends = [
            asyncio.create_task(registry.send(
                "claude", text, session_id="abc", workspace_id="ws", workspace_path=WORKSPACE,
            ))
            for text in ("first", "second")
        ]
        await asyncio.sleep(0.05)
    first, second = await asyncio.gather(*sends)

    assert len(factory.created) == 1
    assert first["delivery"] == "resume_process"
    assert second["delivery"] == "session_input"
    assert factory.created[0].spec.prompt == "first"
    assert factory.created[0].inputs == ["second"]
    assert registry.get("abc").backend is factory.created[0]

    await registry.shutdown()


@pytest.mark.asyncio
async def test_queued_continue_sends_restart_a_terminal_session_once_each(registry, history, factory):
    history.add("abc")

    async with registry._lock:
        sends = [
            asyncio.create_task(registry.send(
                "claude", text, mode="continue", workspace_id="ws", workspace_path=WORKSPACE,
            ))
            for text in ("first", "second")
        ]
        await asyncio.sleep(0.05)
    await asyncio.gather(*sends)

    assert len(factory.created) == 2
    assert factory.created[0].stops == [False]
    assert not factory.created[0].running
    assert factory.created[1].running
    assert registry.get("abc").backend is factory.created[1]

    await registry.shutdown()


@pytest.mark.asyncio
async def test_spawn_refuses_to_replace_a_registered_session(registry, history, factory):
    history.add("abc")
    await registry.send("claude", "first", session_id="abc", workspace_id="ws", workspace_path=WORKSPACE)

    async with registry._lock:
        with pytest.raises(InternalBridgeError, match="already running"):
            await registry._spawn_locked("claude", "ws", WORKSPACE, prompt="again", resume_id="abc")

    assert len(factory.created) == 1
    assert registry.get("abc").backend is factory.created[0]

    await registry.shutdown()


@pytest.mark.asyncio
async def test_send_rejects_unknown_mode(registry):
    with pytest.raises(InvalidParamsError):
        await registry.send("claude", "hi", mode="fork", workspace_path=WORKSPACE)


@pytest.mark.asyncio
async def test_send_continue_without_history_raises_session_not_found(registry):
    with pytest.raises(SessionNotFoundError, match="no session found to continue"):
        await registry.send("claude", "hi", mode="continue", workspace_id="ws", workspace_path=WORKSPACE)


@pytest.mark.asyncio
async def test_send_without_workspace_raises(registry):
    with pytest.raises(InvalidParamsError, match="workspace_id is required"):
        await registry.send("claude", "hi")


@pytest.mark.asyncio
async def test_send_continue_resumes_latest_history_session(registry, history, factory):
    history.add("abc")

    result = await registry.send("claude", "next step", mode="continue", workspace_id="ws", workspace_path=WORKSPACE)

    assert result["delivery"] == "resume_process"
    assert result["session_id"] == "abc"
    spec = factory.created[0].spec
    assert spec.resume_id == "abc"
    assert spec.prompt == "next step"
    assert registry.get("abc").temporary is False

    await registry.shutdown()


@pytest.mark.asyncio
async def test_send_takes_workspace_from_history_entry(registry, history, factory):
    history.add("abc", project_path="/srv/other")

    result = await registry.send("claude", "hi", session_id="abc")

    assert result["delivery"] == "resume_process"
    assert factory.created[0].spec.workspace_path == "/srv/other"

    await registry.shutdown()


@pytest.mark.asyncio
async def test_send_with_mismatched_session_id_starts_new_session(registry, history, factory, caplog):
    history.add("abc", project_path="/srv/other")

    with caplog.at_level("WARNING"):
        result = await registry.send("claude", "hi", session_id="abc", workspace_id="ws", workspace_path=WORKSPACE)

    assert result["delivery"] == "new_process"
    assert factory.created[0].spec.resume_id is None
    assert "mismatch" in caplog.text

    await registry.shutdown()


@pytest.mark.asyncio
async def test_send_with_unknown_session_id_starts_new_session(registry, factory):
    result = await registry.send("claude", "hi", session_id="ghost", workspace_id="ws", workspace_path=WORKSPACE)
    assert result["delivery"] == "new_process"
    assert len(factory.created) == 1

    await registry.shutdown()


@pytest.mark.asyncio
async def test_send_to_live_structured_session_delivers_in_place(registry, history, factory):
    factory.kind = BackendKind.STRUCTURED
    history.add("abc")
    await registry.send("claude", "first", session_id="abc", workspace_id="ws", workspace_path=WORKSPACE)

    result = await registry.send("claude", "follow up", session_id="abc", workspace_id="ws", workspace_path=WORKSPACE)

    assert result["delivery"] == "session_input"
    assert len(factory.created) == 1
    assert factory.created[0].inputs == ["follow up"]

    await registry.shutdown()


@pytest.mark.asyncio
async def test_send_to_live_interactive_session_restarts_with_resume(registry, history, factory):
    history.add("abc")
    await registry.send("claude", "first", session_id="abc", workspace_id="ws", workspace_path=WORKSPACE)

    result = await registry.send("claude", "second", session_id="abc", workspace_id="ws", workspace_path=WORKSPACE)

    assert result["delivery"] == "resume_process"
    assert len(factory.created) == 2
    assert factory.created[0].stops == [False]
    assert factory.created[1].spec.resume_id == "abc"
    assert registry.get("abc").backend is factory.created[1]

    await registry.shutdown()


@pytest.mark.asyncio
async def test_launch_failure_for_missing_binary_is_agent_not_configured(registry, factory):
    factory.fail = FileNotFoundError(2, "No such file or directory", "claude")

    with pytest.raises(AgentNotConfiguredError) as excinfo:
        await registry.send("claude", "hi", workspace_id="ws", workspace_path=WORKSPACE)

    assert excinfo.value.code == AGENT_NOT_CONFIGURED
    assert excinfo.value.data == {"agent_type": "claude", "method": "session/send"}
    assert registry.list_sessions() == []


@pytest.mark.asyncio
async def test_missing_working_directory_is_internal_error(registry, factory):
    factory.fail = FileNotFoundError(2, "No such file or directory", WORKSPACE)

    with pytest.raises(InternalBridgeError):
        await registry.send("codex", "hi", workspace_id="ws", workspace_path=WORKSPACE)
    assert registry.list_sessions() == []


@pytest.mark.asyncio
async def test_other_launch_failure_is_internal_error(registry, factory):
    factory.fail = PermissionError("permission denied")

    with pytest.raises(InternalBridgeError):
        await registry.start("claude", "ws", WORKSPACE)
    assert registry.list_sessions() == []


# ── stop ──


@pytest.mark.asyncio
async def test_double_stop_is_a_noop(registry, factory):
    session, _ = await _spawn(registry)
    sid = session.session_id

    first = await registry.stop(sid)
    second = await registry.stop(sid)

    assert first["status"] == "stopping"
    assert second["status"] == "not_running"
    assert factory.created[0].stops == [False]
    await session.exit_task
    await registry.shutdown()


@pytest.mark.asyncio
async def test_stop_unknown_session_is_not_running(registry):
    assert (await registry.stop("nope"))["status"] == "not_running"


@pytest.mark.asyncio
async def test_stop_escalates_to_kill_when_interrupt_ignored(registry, factory):
    session, _ = await _spawn(registry)
    backend = factory.created[0]

    async def ignore_interrupt(force: bool = False) -> None:
        backend.stops.append(force)
        if force:
            backend.exit(ExitOutcome(returncode=-9, interrupted=True))

    backend.stop = ignore_interrupt
    await registry.stop(session.session_id)
    await asyncio.wait_for(session.exit_task, timeout=2)

    assert backend.stops == [False, True]
    assert session.status == SessionStatus.STOPPED


# ── input / respond ──


@pytest.mark.asyncio
async def test_respond_clears_pending_before_forwarding(registry, factory, publisher):
    session, _ = await _spawn(registry)
    backend = factory.created[0]
    backend.emit(PromptDetected(_bash_prompt()))
    await wait_until(lambda: session.pending_permission is not None)
    assert session.status == SessionStatus.WAITING_PERMISSION

    seen_pending: list[object] = []
    backend.on_input = lambda data: seen_pending.append(session.pending_permission)

    result = await registry.respond(session.session_id, "permission", "approve", client_id="c1")

    assert result["status"] == "responded"
    assert seen_pending == [None]
    assert backend.inputs == ["1"]
    assert session.status == SessionStatus.RUNNING
    resolved = publisher.of_type("pty_permission_resolved")
    assert len(resolved) == 1
    assert resolved[0].resolved_by == "c1"
    assert resolved[0].input == "y"

    await registry.shutdown()


@pytest.mark.asyncio
async def test_respond_no_selects_no_option(registry, factory):
    session, _ = await _spawn(registry)
    factory.created[0].emit(PromptDetected(_bash_prompt()))
    await wait_until(lambda: session.pending_permission is not None)

    await registry.respond(session.session_id, "permission", "deny")

    assert factory.created[0].inputs == ["3"]
    await registry.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("response_type", ["permission", "question"])
async def test_respond_without_pending_prompt_forwards_nothing(registry, factory, response_type):
    factory.kind = BackendKind.STRUCTURED
    session, _ = await _spawn(registry)

    with pytest.raises(InvalidParamsError, match=f"no pending {response_type} request"):
        await registry.respond(session.session_id, response_type, "yes")

    assert factory.created[0].inputs == []
    assert session.status == SessionStatus.RUNNING
    await registry.shutdown()


@pytest.mark.asyncio
async def test_respond_rejects_unknown_type(registry):
    with pytest.raises(InvalidParamsError, match="type must be 'permission' or 'question'"):
        await registry.respond("any", "vote", "y")


@pytest.mark.asyncio
async def test_respond_question_forwards_verbatim_to_structured_session(registry, factory):
    factory.kind = BackendKind.STRUCTURED
    session, _ = await _spawn(registry)
    factory.created[0].emit(PromptDetected(PendingPermission(
        type="question", description="Which database?",
        options=[PromptOption("1", "Postgres"), PromptOption("2", "SQLite")],
    )))
    await wait_until(lambda: session.pending_permission is not None)
    assert session.status == SessionStatus.WAITING_QUESTION

    await registry.respond(session.session_id, "question", "Use SQLite")

    assert factory.created[0].inputs == ["Use SQLite"]
    assert session.pending_permission is None
    await registry.shutdown()


@pytest.mark.asyncio
async def test_input_submit_key_resolves_pending_permission(registry, factory, publisher):
    session, _ = await _spawn(registry)
    factory.created[0].emit(PromptDetected(_bash_prompt()))
    await wait_until(lambda: session.pending_permission is not None)

    await registry.input(session.session_id, key="Enter", client_id="c2")

    assert factory.created[0].inputs == ["\r"]
    assert session.pending_permission is None
    assert publisher.of_type("pty_permission_resolved")[0].resolved_by == "c2"
    await registry.shutdown()


@pytest.mark.asyncio
async def test_input_navigation_key_keeps_pending_permission(registry, factory, publisher):
    session, _ = await _spawn(registry)
    factory.created[0].emit(PromptDetected(_bash_prompt()))
    await wait_until(lambda: session.pending_permission is not None)

    await registry.input(session.session_id, key="down")

    assert factory.created[0].inputs == ["\x1b[B"]
    assert session.pending_permission is not None
    assert publisher.of_type("pty_permission_resolved") == []
    await registry.shutdown()


@pytest.mark.asyncio
async def test_input_text_gets_carriage_return(registry, factory):
    session, _ = await _spawn(registry)
    await registry.input(session.session_id, text="ls -la")
    assert factory.created[0].inputs == ["ls -la\r"]
    await registry.shutdown()


@pytest.mark.asyncio
async def test_input_unknown_key_is_invalid(registry):
    session, _ = await _spawn(registry)
    with pytest.raises(InvalidParamsError, match="unknown key"):
        await registry.input(session.session_id, key="f13")
    await registry.shutdown()


@pytest.mark.asyncio
async def test_input_to_unknown_session_raises(registry):
    with pytest.raises(SessionNotFoundError):
        await registry.input("nope", text="hi")


# ── output ──


@pytest.mark.asyncio
async def test_terminal_output_is_sanitized_and_published(registry, factory, publisher):
    session, _ = await _spawn(registry)
    factory.created[0].emit(TerminalChunk("\x1b[31mHello\x1b[0m\nworld\n"))

    await wait_until(lambda: publisher.of_type("pty_output"))

    output = publisher.of_type("pty_output")[0]
    assert output.clean_text == "Hello\nworld"
    assert "\x1b[31m" in output.raw_text
    assert output.session_id == session.session_id
    await registry.shutdown()


@pytest.mark.asyncio
async def test_blank_output_is_not_published(registry, factory, publisher):
    await _spawn(registry)
    factory.created[0].emit(TerminalChunk("\x1b[2K\x1b[1G\n"))
    await asyncio.sleep(0.05)
    assert publisher.of_type("pty_output") == []
    await registry.shutdown()


@pytest.mark.asyncio
async def test_terminal_prompt_becomes_pending_permission(registry, factory, publisher):
    session, _ = await _spawn(registry)
    factory.created[0].emit(TerminalChunk(
        "Bash command\n"
        "  npm test\n"
        "Do you want to proceed?\n"
        "❯ 1. Yes\n"
        "  2. Yes, and don't ask again for npm commands\n"
        "  3. No, and tell Claude what to do differently (esc)\n"
    ))

    await wait_until(lambda: session.pending_permission is not None)

    assert session.pending_permission.type == "bash_command"
    assert [o.key for o in session.pending_permission.options] == ["1", "2", "3"]
    states = publisher.of_type("pty_state")
    assert states[-1].state == "permission"
    assert states[-1].waiting_for_input is True
    await registry.shutdown()


@pytest.mark.asyncio
async def test_context_exhaustion_publishes_synthetic_message(registry, factory, publisher):
    await _spawn(registry)
    factory.created[0].emit(TerminalChunk(
        "Error: Claude ran out of room in the model's context window\n"
    ))

    await wait_until(lambda: publisher.of_type("claude_message"))

    message = publisher.of_type("claude_message")[0]
    assert message.is_synthetic is True
    assert "ran out of room" in message.text
    await registry.shutdown()


# ── exit ──


@pytest.mark.asyncio
async def test_exit_of_unresolved_session_reports_failure(registry, factory, publisher, resolver):
    session, result = await _spawn(registry)
    temp_id = result["session_id"]
    assert resolver.has_watcher(temp_id)

    factory.created[0].exit(ExitOutcome(returncode=1, error="process exited with code 1"))
    await session.exit_task

    assert registry.get(temp_id) is None
    assert not resolver.has_watcher(temp_id)
    assert session.status == SessionStatus.FAILED
    assert session.backend is None
    failed = publisher.of_type("session_id_failed")
    assert failed[0].reason == "process_exited"
    assert [o.state for o in publisher.of_type("pty_output")] == ["error"]
    assert publisher.of_type("pty_state")[-1].state == "error"
    stopped = publisher.of_type("session_stopped")
    assert stopped[0].exit_code == 1


@pytest.mark.asyncio
async def test_clean_exit_before_resolution_is_trust_declined(registry, factory, publisher):
    session, _ = await _spawn(registry)
    factory.created[0].exit(ExitOutcome(returncode=0))
    await session.exit_task

    assert publisher.of_type("session_id_failed")[0].reason == "trust_declined"
    assert session.status == SessionStatus.STOPPED


@pytest.mark.asyncio
async def test_stopped_session_reports_stopped_reason(registry, publisher):
    session, _ = await _spawn(registry)
    await registry.stop(session.session_id)
    await session.exit_task

    assert publisher.of_type("session_id_failed")[0].reason == "stopped"
    assert publisher.of_type("pty_output") == []
    assert publisher.of_type("pty_state")[-1].state == "idle"
    await registry.shutdown()


@pytest.mark.asyncio
async def test_list_sessions_reports_live_sessions(registry):
    session, _ = await _spawn(registry)
    listed = registry.list_sessions()
    assert [s["session_id"] for s in listed] == [session.session_id]
    assert listed[0]["status"] == "running"
    assert listed[0]["workspace_id"] == "ws"
    await registry.shutdown()
