"""Structured backend: Claude driven through claude_agent_sdk.query().

The SDK frames every exchange, so there is no terminal to scrape. The
prompt is an async generator fed from an input queue, which keeps the
CLI's stdin open for follow-up messages. Permission and question
requests arrive through the ``can_use_tool`` callback and block until
the client answers via deliver_input().
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from agentbridge.engine.backends.base import (
    AssistantText,
    Backend,
    BackendOutput,
    ExitOutcome,
    LaunchSpec,
    PromptDetected,
    TurnCompleted,
)
from agentbridge.engine.models import (
    BackendKind,
    PendingPermission,
    PermissionMode,
    PromptOption,
)

logger = logging.getLogger(__name__)

# Permission modes claude_agent_sdk accepts as-is.
SDK_PERMISSION_MODES = frozenset({
    PermissionMode.DEFAULT.value,
    PermissionMode.ACCEPT_EDITS.value,
    PermissionMode.BYPASS.value,
    PermissionMode.PLAN.value,
})

_USER_QUESTION_TOOLS = frozenset({"askuserquestion", "ask_user_question"})
_ALLOW_ANSWERS = frozenset({"y", "yes", "1", "2", "allow"})

_TOOL_PERMISSION_TYPES = {
    "bash": "bash_command",
    "write": "write_file",
    "edit": "edit_file",
    "multiedit": "edit_file",
    "notebookedit": "edit_file",
}

# How long start() waits for the SDK to fail fast (missing CLI etc.).
_STARTUP_PROBE_SECONDS = 0.5


def _tool_target(tool_input: dict) -> str:
    for key in ("file_path", "path", "notebook_path", "command", "url"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def permission_for_tool(tool_name: str, tool_input: dict) -> PendingPermission:
    """Describe a non-question tool call as a yes/no permission prompt."""
    bare = tool_name.split("__", 2)[2] if tool_name.startswith("mcp__") and tool_name.count("__") >= 2 else tool_name
    if tool_name.startswith("mcp__"):
        ptype = "mcp_tool"
    else:
        ptype = _TOOL_PERMISSION_TYPES.get(bare.lower(), "unknown")
    target = _tool_target(tool_input) or bare
    preview = ""
    if ptype == "bash_command":
        preview = str(tool_input.get("command") or "")
    elif ptype in ("write_file", "edit_file"):
        preview = str(tool_input.get("content") or tool_input.get("new_string") or "")
    return PendingPermission(
        type=ptype,
        target=target,
        description=f"Allow {bare}?",
        preview=preview[:2000],
        options=[PromptOption("y", "Yes"), PromptOption("n", "No")],
    )


def permission_for_question(tool_input: dict) -> PendingPermission:
    """Describe an AskUserQuestion call; options are keyed "1", "2", ..."""
    questions = tool_input.get("questions") or []
    first = questions[0] if questions and isinstance(questions[0], dict) else {}
    text = str(first.get("question") or tool_input.get("question") or "")
    options: list[PromptOption] = []
    for i, opt in enumerate(first.get("options") or [], start=1):
        if isinstance(opt, dict):
            options.append(PromptOption(
                str(i), str(opt.get("label", "")), str(opt.get("description", "")),
            ))
        else:
            options.append(PromptOption(str(i), str(opt)))
    return PendingPermission(
        type="question",
        target=str(first.get("header") or ""),
        description=text,
        options=options,
    )


class StructuredBackend(Backend):
    """One claude_agent_sdk.query() stream per session."""

    kind = BackendKind.STRUCTURED

    def __init__(
        self,
        spec: LaunchSpec,
        cli_path: str | None = None,
        query_fn: Callable[..., AsyncIterator[Any]] | None = None,
    ) -> None:
        super().__init__(spec)
        self._cli_path = cli_path
        self._query_fn = query_fn
        self._inputs: asyncio.Queue[str | None] = asyncio.Queue()
        self._outputs: asyncio.Queue[BackendOutput | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._pending: asyncio.Future[str] | None = None
        self._pending_prompt: PendingPermission | None = None
        self._interrupted = False
        self.reported_session_id: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _build_options(self) -> Any:
        from claude_agent_sdk import ClaudeAgentOptions

        options_kwargs: dict[str, Any] = dict(
            cwd=self.spec.workspace_path,
            can_use_tool=self._check_permission,
        )
        if self.spec.permission_mode in SDK_PERMISSION_MODES:
            options_kwargs["permission_mode"] = self.spec.permission_mode
        if self.spec.resume_id:
            options_kwargs["resume"] = self.spec.resume_id
        if self._cli_path:
            options_kwargs["cli_path"] = self._cli_path
        return ClaudeAgentOptions(**options_kwargs)

    async def start(self) -> None:
        if self._query_fn is None:
            # Import SDK lazily so the rest of the bridge works without it.
            from claude_agent_sdk import query
            self._query_fn = query
            options = self._build_options()
        else:
            options = None
        if self.spec.prompt:
            self._inputs.put_nowait(self.spec.prompt)
        logger.info(
            "Structured session starting session=%s mode=%s resume=%s cwd=%s cli=%s",
            self.session_id, self.spec.permission_mode, self.spec.resume_id,
            self.spec.workspace_path, self._cli_path or "<sdk-bundled>",
        )
        self._task = asyncio.create_task(self._run(options), name=f"sdk-{self.session_id}")
        done, _ = await asyncio.wait({self._task}, timeout=_STARTUP_PROBE_SECONDS)
        if self._task in done and not self._task.cancelled():
            exc = self._task.exception()
            if exc is not None:
                raise self._translate(exc) from exc

    @staticmethod
    def _translate(exc: BaseException) -> BaseException:
        from claude_agent_sdk import CLINotFoundError

        if isinstance(exc, CLINotFoundError):
            return FileNotFoundError(str(exc))
        return exc

    async def _prompt_stream(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            text = await self._inputs.get()
            if text is None:
                return
            yield {
                "type": "user",
                "message": {"role": "user", "content": text},
            }

    async def _run(self, options: Any) -> None:
        assert self._query_fn is not None
        try:
            async for message in self._query_fn(prompt=self._prompt_stream(), options=options):
                self._handle_message(message)
        finally:
            self._outputs.put_nowait(None)

    def _handle_message(self, message: Any) -> None:
        if hasattr(message, "result"):
            session_id = getattr(message, "session_id", None)
            if session_id:
                self.reported_session_id = session_id
            self._outputs.put_nowait(TurnCompleted(
                result=str(getattr(message, "result", "") or ""),
                is_error=bool(getattr(message, "is_error", False)),
                session_id=session_id,
            ))
            return
        data = getattr(message, "data", None)
        if isinstance(data, dict) and data.get("session_id"):
            self.reported_session_id = str(data["session_id"])
            logger.debug("SDK reported session session=%s sdk_id=%s", self.session_id, self.reported_session_id)
            return
        if hasattr(message, "content") and hasattr(message, "model"):
            texts = [
                block.text for block in message.content
                if hasattr(block, "text") and block.text
            ]
            if texts:
                self._outputs.put_nowait(AssistantText("\n".join(texts)))

    async def _check_permission(
        self, tool_name: str, tool_input: dict, context: object = None,
    ):
        """can_use_tool callback: surface the call and wait for an answer."""
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        tool_input = tool_input if isinstance(tool_input, dict) else {}
        is_question = tool_name.lower() in _USER_QUESTION_TOOLS
        prompt = (
            permission_for_question(tool_input)
            if is_question
            else permission_for_tool(tool_name, tool_input)
        )
        logger.info(
            "PERM_CHECK session=%s tool=%s type=%s", self.session_id, tool_name, prompt.type,
        )
        loop = asyncio.get_running_loop()
        self._pending = loop.create_future()
        self._pending_prompt = prompt
        self._outputs.put_nowait(PromptDetected(prompt))
        try:
            answer = await self._pending
        finally:
            self._pending = None
            self._pending_prompt = None

        if is_question:
            # The SDK has no answer channel for questions; the deny message
            # carries the user's answer back to the model.
            label = next((o.label for o in prompt.options if o.key == answer.strip()), answer)
            return PermissionResultDeny(message=f"User responded: {label}")
        if answer.strip().lower() in _ALLOW_ANSWERS:
            return PermissionResultAllow()
        return PermissionResultDeny(message="User denied tool call")

    async def deliver_input(self, data: str) -> None:
        if not self.running:
            raise RuntimeError(f"session {self.session_id} is not running")
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(data)
            return
        self._inputs.put_nowait(data)

    async def stream_output(self) -> AsyncIterator[BackendOutput]:
        while True:
            item = await self._outputs.get()
            if item is None:
                return
            yield item

    async def stop(self, force: bool = False) -> None:
        if not self.running:
            return
        self._interrupted = True
        self._inputs.put_nowait(None)
        if self._pending is not None and not self._pending.done():
            self._pending.set_result("n")
        if force and self._task is not None:
            self._task.cancel()
        logger.info("Structured session stop requested session=%s force=%s", self.session_id, force)

    async def wait(self) -> ExitOutcome:
        if self._task is None:
            return ExitOutcome(error="session was never started")
        await asyncio.wait({self._task})
        error: str | None = None
        if self._task.cancelled():
            if not self._interrupted:
                error = "session cancelled"
        else:
            exc = self._task.exception()
            if exc is not None:
                error = str(self._translate(exc)) or type(exc).__name__
                logger.warning("Structured session failed session=%s err=%s", self.session_id, error)
        return ExitOutcome(
            returncode=0 if error is None else 1,
            error=error,
            interrupted=self._interrupted,
            reported_session_id=self.reported_session_id,
        )
