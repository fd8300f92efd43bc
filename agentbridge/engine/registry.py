"""Session registry: creates, tracks and tears down agent sessions.

Central table of live sessions keyed by session id. Owns each session's
backend and its background tasks (output pump, exit waiter), the
temporary-id -> real-id remapping, and the per-session log dedup state.

Lifecycle: starting -> running -> {waiting_permission, waiting_question}
-> running -> idle -> stopped, with failed reachable from any
non-terminal state. Terminal sessions are removed from the table.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from agentbridge.adapters.event_hub import EventPublisher
from agentbridge.adapters.events import (
    ClaudeMessage,
    PtyOutput,
    PtyPermission,
    PtyPermissionResolved,
    PtyState as PtyStateChanged,
    SessionIDFailed,
    SessionIDResolved,
    SessionStopped,
)
from agentbridge.engine.backends.base import (
    AssistantText,
    ExitOutcome,
    LaunchSpec,
    PromptDetected,
    TerminalChunk,
    TurnCompleted,
)
from agentbridge.engine.backends.keys import (
    SUBMIT_KEYS,
    encode_input,
    encode_key,
    normalize_key,
    normalize_permission_response,
)
from agentbridge.engine.coalescer import OutputCoalescer
from agentbridge.engine.config import BridgeConfig
from agentbridge.engine.errors import (
    InternalBridgeError,
    InvalidParamsError,
    SessionNotFoundError,
    classify_launch_error,
)
from agentbridge.engine.history import HistoryEntry, paths_match
from agentbridge.engine.models import (
    BackendKind,
    PendingPermission,
    PtyState,
    Session,
    SessionStatus,
    make_temp_id,
)
from agentbridge.engine.prompt_parser import PromptParser
from agentbridge.engine.resolver import IdentityResolver
from agentbridge.engine.sanitizer import is_blank, sanitize

logger = logging.getLogger(__name__)

SEND_MODES = ("new", "continue")
RESPOND_TYPES = ("permission", "question")

_CONTEXT_EXHAUSTED = "ran out of room in the model's context window"
_LOG_PREVIEW = 160

RemapListener = Callable[[str, str], Awaitable[None]]


class SessionRegistry:
    """Owns every live session and the operations clients run on them.

    The check-then-create step of start/send runs under one asyncio.Lock
    so concurrent requests for a workspace never spawn two processes.
    """

    def __init__(
        self,
        publisher: EventPublisher,
        resolver: IdentityResolver,
        factory: Any,
        config: BridgeConfig | None = None,
    ) -> None:
        self._publisher = publisher
        self._resolver = resolver
        self._factory = factory
        self._config = config or BridgeConfig()
        self._sessions: dict[str, Session] = {}
        # session_id -> last logged output preview
        self._last_log: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._remap_listeners: list[RemapListener] = []
        self._escalations: set[asyncio.Task] = set()

    # ── Lookup ──

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def _unique_sessions(self) -> list[Session]:
        return list({id(s): s for s in self._sessions.values()}.values())

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.summary() for s in self._unique_sessions()]

    def find_live(self, workspace_path: str, agent_type: str) -> Session | None:
        """Most recently created live session for (workspace, agent)."""
        matches = [
            s for s in self._unique_sessions()
            if s.live and s.agent_type == agent_type and s.workspace_path == workspace_path
        ]
        if not matches:
            return None
        return max(matches, key=lambda s: s.created_at)

    def add_remap_listener(self, listener: RemapListener) -> None:
        self._remap_listeners.append(listener)

    async def history(self, agent_type: str, workspace_path: str) -> list[HistoryEntry]:
        index = self._resolver.history(agent_type)
        if index is None:
            return []
        return await asyncio.to_thread(index.sessions_for, workspace_path)

    async def _latest_history(self, agent_type: str, workspace_path: str) -> HistoryEntry | None:
        entries = await self.history(agent_type, workspace_path)
        return entries[0] if entries else None

    async def _find_history(self, agent_type: str, session_id: str) -> HistoryEntry | None:
        index = self._resolver.history(agent_type)
        if index is None:
            return None
        return await asyncio.to_thread(index.find, session_id)

    def _require_live(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None or session.backend is None or session.status.terminal:
            raise SessionNotFoundError(f"session is not running: {session_id}", session_id)
        return session

    # ── start / send ──

    async def start(
        self,
        agent_type: str,
        workspace_id: str,
        workspace_path: str,
        session_id: str | None = None,
        permission_mode: str = "default",
        client_id: str | None = None,
    ) -> dict[str, Any]:
        """Attach to an existing session or spawn a new one."""
        if session_id:
            session = self._sessions.get(session_id)
            if session is not None and session.live:
                return self._attached(session, client_id)
            entry = await self._find_history(agent_type, session_id)
            if entry is not None:
                return self._attached_history(entry, workspace_id)
            logger.info("Start requested for unknown session=%s agent=%s", session_id, agent_type)
            return {
                "session_id": "",
                "status": "not_found",
                "source": "",
                "message": f"session {session_id} not found",
            }

        entry = await self._latest_history(agent_type, workspace_path)
        if entry is not None:
            return self._attached_history(entry, workspace_id)

        async with self._lock:
            session = self.find_live(workspace_path, agent_type)
            if session is None:
                session, snapshot = await self._spawn_locked(
                    agent_type, workspace_id, workspace_path,
                    permission_mode=permission_mode, method="session/start",
                )
            else:
                snapshot = None
        if snapshot is None:
            return self._attached(session, client_id)

        await self._finish_spawn(session, snapshot)
        return {
            "session_id": session.session_id,
            "workspace_id": workspace_id,
            "status": "started",
            "source": "managed",
            "temporary": session.temporary,
        }

    def _attached(self, session: Session, client_id: str | None) -> dict[str, Any]:
        has_pending = self.reemit_pending(session, client_id)
        return {
            "session_id": session.session_id,
            "workspace_id": session.workspace_id,
            "status": "attached",
            "source": "managed",
            "session_status": session.status.value,
            "has_pending_permission": has_pending,
        }

    @staticmethod
    def _attached_history(entry: HistoryEntry, workspace_id: str) -> dict[str, Any]:
        return {
            "session_id": entry.session_id,
            "workspace_id": workspace_id,
            "status": "attached",
            "source": "history",
            "path": entry.full_path,
            "summary": entry.summary,
        }

    async def send(
        self,
        agent_type: str,
        prompt: str,
        mode: str = "new",
        session_id: str | None = None,
        workspace_id: str = "",
        workspace_path: str | None = None,
        permission_mode: str = "default",
    ) -> dict[str, Any]:
        """Deliver *prompt* to a live session or launch a process for it."""
        if mode not in SEND_MODES:
            raise InvalidParamsError(f"mode must be one of: {', '.join(SEND_MODES)}")

        if session_id:
            session_id, workspace_path, workspace_id = await self._check_send_target(
                agent_type, session_id, workspace_path, workspace_id,
            )

        if mode == "continue" and not session_id:
            if not workspace_path:
                raise InvalidParamsError("workspace_id is required to continue a session")
            entry = await self._latest_history(agent_type, workspace_path)
            if entry is None:
                raise SessionNotFoundError("no session found to continue")
            session_id = entry.session_id

        if not workspace_path:
            raise InvalidParamsError("workspace_id is required")
        workspace_id = workspace_id or workspace_path

        if session_id:
            return await self._send_to(
                agent_type, prompt, session_id, workspace_id, workspace_path, permission_mode,
            )

        async with self._lock:
            live = self.find_live(workspace_path, agent_type)
            if live is None:
                session, snapshot = await self._spawn_locked(
                    agent_type, workspace_id, workspace_path,
                    prompt=prompt, permission_mode=permission_mode, method="session/send",
                )
        if live is not None:
            delivery = await self._deliver_prompt(live, prompt)
            return {
                "session_id": live.session_id,
                "workspace_id": live.workspace_id,
                "status": "sent",
                "delivery": delivery,
            }

        await self._finish_spawn(session, snapshot)
        return {
            "session_id": session.session_id,
            "workspace_id": workspace_id,
            "status": "started",
            "temporary": session.temporary,
            "auto_created": True,
            "delivery": "new_process",
        }

    async def _check_send_target(
        self,
        agent_type: str,
        session_id: str,
        workspace_path: str | None,
        workspace_id: str,
    ) -> tuple[str | None, str | None, str]:
        """Validate a caller-supplied session id against the workspace.

        Unknown or mismatched ids are dropped with a warning and the
        request falls through to workspace-based selection.
        """
        live = self._sessions.get(session_id)
        if live is not None and not live.status.terminal:
            found_path, found_ws = live.workspace_path, live.workspace_id
        else:
            entry = await self._find_history(agent_type, session_id)
            if entry is None:
                logger.warning(
                    "Session not found, ignoring session_id=%s agent=%s workspace=%s",
                    session_id, agent_type, workspace_path,
                )
                return None, workspace_path, workspace_id
            found_path, found_ws = entry.project_path, ""
        if workspace_path and not paths_match(found_path, workspace_path):
            logger.warning(
                "Session workspace mismatch, ignoring session_id=%s session_path=%s workspace=%s",
                session_id, found_path, workspace_path,
            )
            return None, workspace_path, workspace_id
        return session_id, workspace_path or found_path, workspace_id or found_ws

    async def _send_to(
        self,
        agent_type: str,
        prompt: str,
        session_id: str,
        workspace_id: str,
        workspace_path: str,
        permission_mode: str,
    ) -> dict[str, Any]:
        while True:
            existing = self._sessions.get(session_id)
            if existing is not None and existing.live and existing.kind == BackendKind.STRUCTURED:
                delivery = await self._deliver_prompt(existing, prompt)
                return {
                    "session_id": existing.session_id,
                    "workspace_id": existing.workspace_id,
                    "status": "sent",
                    "delivery": delivery,
                }
            if existing is not None:
                # A terminal can't take a new prompt mid-session: restart it on resume.
                await self.stop(session_id)
                if existing.exit_task is not None:
                    await asyncio.wait(
                        {existing.exit_task}, timeout=self._config.stop_grace_seconds + 3,
                    )
                if self._sessions.get(session_id) is existing:
                    raise InternalBridgeError(
                        f"session {session_id} did not stop in time", {"session_id": session_id},
                    )

            async with self._lock:
                if session_id in self._sessions:
                    # Another send registered this id while we waited.
                    continue
                session, _ = await self._spawn_locked(
                    agent_type, workspace_id, workspace_path,
                    prompt=prompt, permission_mode=permission_mode,
                    resume_id=session_id, method="session/send",
                )
            break
        return {
            "session_id": session.session_id,
            "workspace_id": workspace_id,
            "status": "started",
            "delivery": "resume_process",
        }

    async def _deliver_prompt(self, session: Session, prompt: str) -> str:
        if session.kind == BackendKind.INTERACTIVE:
            await self._deliver(session, encode_input(prompt))
            return "pty_input"
        await self._deliver(session, prompt)
        return "session_input"

    # ── Spawning ──

    async def _spawn_locked(
        self,
        agent_type: str,
        workspace_id: str,
        workspace_path: str,
        prompt: str | None = None,
        permission_mode: str = "default",
        resume_id: str | None = None,
        method: str = "session/start",
    ) -> tuple[Session, frozenset[str]]:
        """Launch a backend and register its session. Caller holds the lock."""
        kind = self._factory.kind_for(agent_type, permission_mode)
        if resume_id:
            if resume_id in self._sessions:
                raise InternalBridgeError(
                    f"session {resume_id} is already running", {"session_id": resume_id},
                )
            session_id = resume_id
            snapshot: frozenset[str] = frozenset()
        else:
            session_id = make_temp_id(agent_type)
            snapshot = await self._resolver.snapshot(agent_type, workspace_path)

        spec = LaunchSpec(
            agent_type=agent_type,
            session_id=session_id,
            workspace_path=workspace_path,
            prompt=prompt,
            resume_id=resume_id,
            permission_mode=permission_mode,
        )
        session = Session(
            session_id=session_id,
            workspace_id=workspace_id,
            workspace_path=workspace_path,
            agent_type=agent_type,
            kind=kind,
            temporary=resume_id is None,
        )
        self._sessions[session_id] = session
        try:
            session.backend = self._factory.create(spec, kind)
            await session.backend.start()
        except Exception as exc:
            self._sessions.pop(session_id, None)
            session.status = SessionStatus.FAILED
            session.backend = None
            logger.warning(
                "Session launch failed session=%s agent=%s workspace=%s err=%s",
                session_id, agent_type, workspace_path, exc,
            )
            executable = spec.command[0] if spec.command else agent_type
            raise classify_launch_error(exc, agent_type, method, executable) from exc

        session.status = SessionStatus.RUNNING
        if kind == BackendKind.INTERACTIVE and agent_type == "claude":
            session.parser = PromptParser()
        session.pump_task = asyncio.create_task(
            self._pump(session), name=f"pump-{session_id}",
        )
        session.exit_task = asyncio.create_task(
            self._wait_for_exit(session), name=f"exit-{session_id}",
        )
        logger.info(
            "Session started session=%s agent=%s kind=%s workspace=%s resume=%s",
            session_id, agent_type, kind.value, workspace_path, bool(resume_id),
        )
        return session, snapshot

    async def _finish_spawn(self, session: Session, snapshot: frozenset[str]) -> None:
        """Bounded identity resolution; hand off to a watcher on timeout."""
        if not session.temporary:
            return
        temp_id = session.session_id
        entry = await self._resolver.resolve_new(
            session.agent_type, session.workspace_path, snapshot,
        )
        if not session.temporary or self._sessions.get(temp_id) is not session:
            # Resolved by the backend itself, or already gone.
            return
        if entry is not None:
            if await self.remap(temp_id, entry.session_id):
                self.announce_resolution(temp_id, entry)
            return
        if session.live:
            self._resolver.start_watcher(
                self, temp_id, session.agent_type, session.workspace_path, snapshot,
            )

    # ── Identity remapping ──

    async def remap(self, old_session_id: str, new_session_id: str) -> bool:
        """Move a session from its temporary id to its real one.

        Returns False (and changes nothing) when either id is empty, they
        are equal, *old_session_id* is not registered, or the new id is
        taken by another session.
        """
        if not old_session_id or not new_session_id or old_session_id == new_session_id:
            return False
        async with self._lock:
            session = self._sessions.get(old_session_id)
            if session is None:
                return False
            owner = self._sessions.get(new_session_id)
            if owner is not None and owner is not session:
                logger.warning(
                    "Remap target already registered old=%s new=%s", old_session_id, new_session_id,
                )
                return False
            del self._sessions[old_session_id]
            self._sessions[new_session_id] = session
            session.session_id = new_session_id
            session.temporary = False
            if session.backend is not None:
                session.backend.session_id = new_session_id
            last = self._last_log.pop(old_session_id, None)
            if last is not None:
                self._last_log.setdefault(new_session_id, last)
        self._publisher.remap_session(old_session_id, new_session_id)
        for listener in self._remap_listeners:
            await listener(old_session_id, new_session_id)
        logger.info("Session remapped old=%s new=%s", old_session_id, new_session_id)
        return True

    def announce_resolution(self, old_session_id: str, entry: HistoryEntry) -> None:
        session = self._sessions.get(entry.session_id)
        self._publisher.publish(SessionIDResolved(
            session_id=entry.session_id,
            workspace_id=session.workspace_id if session else None,
            old_session_id=old_session_id,
            new_session_id=entry.session_id,
            path=entry.full_path,
        ))

    # ── stop / input / respond ──

    async def stop(self, session_id: str) -> dict[str, Any]:
        """Interrupt a session; escalate to a kill after the grace period."""
        session = self._sessions.get(session_id)
        if session is None or session.stopping or session.status.terminal or session.backend is None:
            return {"session_id": session_id, "status": "not_running"}
        session.stopping = True
        try:
            await session.backend.stop()
        except OSError as exc:
            logger.warning("Interrupt failed session=%s err=%s", session_id, exc)
        task = asyncio.create_task(self._escalate_stop(session), name=f"kill-{session_id}")
        self._escalations.add(task)
        task.add_done_callback(self._escalations.discard)
        logger.info("Session stopping session=%s", session_id)
        return {"session_id": session.session_id, "status": "stopping"}

    async def _escalate_stop(self, session: Session) -> None:
        await asyncio.sleep(self._config.stop_grace_seconds)
        backend = session.backend
        if self._sessions.get(session.session_id) is not session or backend is None:
            return
        if backend.running:
            logger.warning("Session ignored interrupt, killing session=%s", session.session_id)
            await backend.stop(force=True)

    async def input(
        self,
        session_id: str,
        text: str | None = None,
        key: str | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        """Type raw text or a named key into a session."""
        session = self._require_live(session_id)
        interactive = session.kind == BackendKind.INTERACTIVE
        if key is not None:
            if not interactive:
                raise InvalidParamsError("key input requires an interactive session")
            data = encode_key(key)
            answers_prompt = normalize_key(key) in SUBMIT_KEYS
        else:
            text = text or ""
            data = encode_input(text) if interactive else text
            answers_prompt = True

        resolved = answers_prompt and session.pending_permission is not None
        if resolved:
            self._clear_pending(session)
        await self._deliver(session, data)
        if resolved:
            self._publish_resolved(session, client_id, key if key is not None else text or "")
        return {"session_id": session.session_id, "status": "sent"}

    async def respond(
        self,
        session_id: str,
        response_type: str,
        response: str,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        """Answer the session's pending permission or question."""
        if response_type not in RESPOND_TYPES:
            raise InvalidParamsError("type must be 'permission' or 'question'")
        session = self._require_live(session_id)
        value = (
            normalize_permission_response(response)
            if response_type == "permission"
            else response
        )
        pending = session.pending_permission
        if pending is None:
            raise InvalidParamsError(
                f"no pending {response_type} request", {"session_id": session.session_id},
            )
        # Cleared before forwarding: the answer may trigger the next prompt.
        self._clear_pending(session)
        if session.kind == BackendKind.INTERACTIVE:
            data = _terminal_answer(pending, value)
        else:
            data = value
        await self._deliver(session, data)
        self._publish_resolved(session, client_id, value)
        return {"session_id": session.session_id, "status": "responded", "input": value}

    async def _deliver(self, session: Session, data: str) -> None:
        if session.backend is None:
            raise SessionNotFoundError(
                f"session is not running: {session.session_id}", session.session_id,
            )
        try:
            await session.backend.deliver_input(data)
        except (OSError, RuntimeError) as exc:
            raise InternalBridgeError(
                f"failed to deliver input: {exc}", {"session_id": session.session_id},
            ) from exc

    # ── Pending permission ──

    def _set_pending(self, session: Session, prompt: PendingPermission) -> None:
        session.pending_permission = prompt
        session.status = (
            SessionStatus.WAITING_QUESTION if prompt.is_question
            else SessionStatus.WAITING_PERMISSION
        )
        self._publish_permission(session, prompt)
        self._publisher.publish(PtyStateChanged(
            session_id=session.session_id,
            workspace_id=session.workspace_id,
            state=(PtyState.QUESTION if prompt.is_question else PtyState.PERMISSION).value,
            waiting_for_input=True,
            prompt_type=prompt.type,
        ))

    def _clear_pending(self, session: Session) -> None:
        session.pending_permission = None
        if session.parser is not None:
            session.parser.reset()
        if session.status in (SessionStatus.WAITING_PERMISSION, SessionStatus.WAITING_QUESTION):
            session.status = SessionStatus.RUNNING

    def reemit_pending(self, session: Session, client_id: str | None = None) -> bool:
        """Publish the session's pending prompt again (to *client_id* only)."""
        if session.pending_permission is None:
            return False
        self._publish_permission(session, session.pending_permission, client_id)
        return True

    def _publish_permission(
        self, session: Session, prompt: PendingPermission, client_id: str | None = None,
    ) -> None:
        self._publisher.publish(
            PtyPermission(
                session_id=session.session_id,
                workspace_id=session.workspace_id,
                type=prompt.type,
                target=prompt.target,
                description=prompt.description,
                preview=prompt.preview,
                options=prompt.options_as_dicts(),
            ),
            client_id=client_id,
        )

    def _publish_resolved(self, session: Session, client_id: str | None, value: str) -> None:
        self._publisher.publish(PtyPermissionResolved(
            session_id=session.session_id,
            workspace_id=session.workspace_id,
            resolved_by=client_id,
            input=value,
        ))

    # ── Output ──

    async def _pump(self, session: Session) -> None:
        backend = session.backend
        if backend is None:
            return
        coalescer: OutputCoalescer | None = None
        ticker: asyncio.Task | None = None
        if session.kind == BackendKind.INTERACTIVE:
            coalescer = OutputCoalescer(
                lambda batch: self._publish_output(session, batch),
                max_lines=self._config.max_batch_lines,
                max_bytes=self._config.max_batch_bytes,
            )
            ticker = asyncio.create_task(
                coalescer.run_ticker(self._config.flush_interval_seconds),
                name=f"flush-{session.session_id}",
            )
        try:
            async for item in backend.stream_output():
                if isinstance(item, TerminalChunk):
                    if coalescer is not None:
                        coalescer.feed(item.text)
                elif isinstance(item, AssistantText):
                    self._publisher.publish(ClaudeMessage(
                        session_id=session.session_id,
                        workspace_id=session.workspace_id,
                        role=item.role,
                        text=item.text,
                    ))
                elif isinstance(item, PromptDetected):
                    self._set_pending(session, item.permission)
                elif isinstance(item, TurnCompleted):
                    await self._on_turn_completed(session, item)
        except Exception:
            logger.exception("Output pump failed session=%s", session.session_id)
            self._publisher.publish(PtyStateChanged(
                session_id=session.session_id,
                workspace_id=session.workspace_id,
                state=PtyState.ERROR.value,
            ))
        finally:
            if ticker is not None:
                ticker.cancel()
            if coalescer is not None:
                coalescer.finish()

    async def _on_turn_completed(self, session: Session, item: TurnCompleted) -> None:
        if session.temporary and item.session_id:
            old = session.session_id
            if await self.remap(old, item.session_id):
                self.announce_resolution(old, HistoryEntry(
                    session_id=item.session_id,
                    full_path="",
                    project_path=session.workspace_path,
                ))
        if session.pending_permission is None and not session.status.terminal:
            session.status = SessionStatus.IDLE
        self._publisher.publish(PtyStateChanged(
            session_id=session.session_id,
            workspace_id=session.workspace_id,
            state=(PtyState.ERROR if item.is_error else PtyState.IDLE).value,
        ))

    def _publish_output(self, session: Session, batch: str) -> None:
        if is_blank(batch):
            return
        clean = sanitize(batch)
        if is_blank(clean):
            return

        parser = session.parser
        detected: PendingPermission | None = None
        before = parser.state if parser is not None else None
        if parser is not None:
            for line in clean.split("\n"):
                prompt = parser.process_line(line)
                if prompt is not None:
                    detected = prompt
            state = parser.state.value
        else:
            state = PtyState.THINKING.value

        self._log_output(session, clean)
        self._publisher.publish(PtyOutput(
            session_id=session.session_id,
            workspace_id=session.workspace_id,
            clean_text=clean,
            raw_text=batch,
            state=state,
        ))
        if detected is not None:
            self._set_pending(session, detected)
        elif parser is not None and parser.state != before:
            self._publisher.publish(PtyStateChanged(
                session_id=session.session_id,
                workspace_id=session.workspace_id,
                state=state,
                waiting_for_input=parser.waiting_for_input,
                prompt_type="question" if parser.state == PtyState.QUESTION else None,
            ))

        exhausted = [line for line in clean.split("\n") if _CONTEXT_EXHAUSTED in line.lower()]
        if exhausted:
            self._publisher.publish(ClaudeMessage(
                session_id=session.session_id,
                workspace_id=session.workspace_id,
                role="assistant",
                text="\n".join(line.strip() for line in exhausted),
                is_synthetic=True,
            ))

    def _log_output(self, session: Session, clean: str) -> None:
        preview = " ".join(clean.split())[:_LOG_PREVIEW]
        if self._last_log.get(session.session_id) == preview:
            return
        self._last_log[session.session_id] = preview
        logger.debug("Output session=%s text=%s", session.session_id, preview)

    # ── Exit ──

    async def _wait_for_exit(self, session: Session) -> None:
        backend = session.backend
        if backend is None:
            return
        try:
            outcome = await backend.wait()
        except Exception as exc:
            logger.exception("Waiting for backend failed session=%s", session.session_id)
            outcome = ExitOutcome(error=str(exc) or type(exc).__name__)
        if session.pump_task is not None:
            await asyncio.gather(session.pump_task, return_exceptions=True)

        async with self._lock:
            for key in [k for k, s in self._sessions.items() if s is session]:
                del self._sessions[key]
            self._last_log.pop(session.session_id, None)
            self._last_log.pop(session.origin_id, None)
        self._resolver.stop_watcher(session.origin_id)

        sid = session.session_id
        failed = outcome.error is not None and not outcome.interrupted
        if session.temporary:
            if outcome.interrupted:
                reason = "stopped"
            elif outcome.returncode == 0 and outcome.error is None:
                # Exiting cleanly before any transcript exists means the
                # workspace trust prompt was declined.
                reason = "trust_declined"
            else:
                reason = "process_exited"
            self._publisher.publish(SessionIDFailed(
                session_id=sid,
                workspace_id=session.workspace_id,
                reason=reason,
                message=outcome.error or "session exited before its id was resolved",
            ))
        if failed:
            self._publisher.publish(PtyOutput(
                session_id=sid,
                workspace_id=session.workspace_id,
                clean_text=outcome.error or "",
                raw_text=outcome.error or "",
                state=PtyState.ERROR.value,
            ))
        self._publisher.publish(PtyStateChanged(
            session_id=sid,
            workspace_id=session.workspace_id,
            state=(PtyState.ERROR if failed else PtyState.IDLE).value,
        ))
        self._publisher.publish(SessionStopped(
            session_id=sid,
            workspace_id=session.workspace_id,
            exit_code=outcome.returncode,
            error=outcome.error,
        ))
        session.status = SessionStatus.FAILED if failed else SessionStatus.STOPPED
        session.pending_permission = None
        session.backend = None
        logger.info(
            "Session exited session=%s code=%s error=%s interrupted=%s",
            sid, outcome.returncode, outcome.error, outcome.interrupted,
        )

    async def shutdown(self) -> None:
        """Cancel watchers, stop every session and wait for them to exit."""
        await self._resolver.shutdown()
        sessions = self._unique_sessions()
        for session in sessions:
            await self.stop(session.session_id)
        tasks = {s.exit_task for s in sessions if s.exit_task is not None}
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._config.stop_grace_seconds)
            if pending:
                for session in sessions:
                    if session.backend is not None and session.backend.running:
                        await session.backend.stop(force=True)
                await asyncio.wait(pending, timeout=self._config.stop_grace_seconds)
        for task in list(self._escalations):
            task.cancel()
        logger.info("Session registry shut down sessions=%d", len(sessions))


def _terminal_answer(pending: PendingPermission | None, value: str) -> str:
    """Keystroke that picks *value* on a terminal prompt.

    Numbered menus take the option digit without Enter; "y"/"n" map to
    the menu's Yes/No entry when the menu has no literal y/n option.
    """
    if pending is not None and pending.options:
        keys = {o.key for o in pending.options}
        if value in keys:
            return value
        if value in ("y", "n"):
            prefix = "yes" if value == "y" else "no"
            for option in pending.options:
                if option.label.strip().lower().startswith(prefix):
                    return option.key
    return encode_input(value)
