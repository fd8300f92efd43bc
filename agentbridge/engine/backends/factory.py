"""Backend factory: picks a backend kind and builds its launch command."""
from __future__ import annotations

import logging
import shutil

from agentbridge.engine.backends.base import Backend, LaunchSpec, resolve_command
from agentbridge.engine.backends.pty_backend import PtyBackend
from agentbridge.engine.backends.structured import StructuredBackend
from agentbridge.engine.config import BridgeConfig
from agentbridge.engine.models import BackendKind, PermissionMode

logger = logging.getLogger(__name__)

AGENT_TYPES = ("claude", "codex")


class BackendFactory:
    """Maps agent types to backends.

    Claude runs through the SDK unless the caller asks for the
    interactive permission mode; Codex is always driven on a PTY.
    """

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config
        self._binaries = {
            "claude": config.claude_cli,
            "codex": config.codex_cli,
        }

    def kind_for(self, agent_type: str, permission_mode: str | None = None) -> BackendKind:
        if agent_type == "claude" and permission_mode != PermissionMode.INTERACTIVE.value:
            return BackendKind.STRUCTURED
        return BackendKind.INTERACTIVE

    def is_available(self, agent_type: str) -> bool:
        binary = self._binaries.get(agent_type)
        return bool(binary and shutil.which(binary))

    def availability_report(self) -> dict[str, bool]:
        return {agent: self.is_available(agent) for agent in AGENT_TYPES}

    def build_command(
        self,
        agent_type: str,
        prompt: str | None = None,
        resume_id: str | None = None,
    ) -> list[str]:
        """Command line for an interactive launch of *agent_type*."""
        binary = resolve_command(self._binaries.get(agent_type, agent_type), agent_type)
        if agent_type == "codex":
            if resume_id:
                cmd = [binary, "exec", "resume", resume_id]
                return cmd + [prompt] if prompt else cmd
            if prompt:
                return [binary, "exec", prompt]
            return [binary]
        cmd = [binary]
        if resume_id:
            cmd += ["--resume", resume_id]
        if prompt:
            cmd.append(prompt)
        return cmd

    def create(self, spec: LaunchSpec, kind: BackendKind) -> Backend:
        if kind == BackendKind.STRUCTURED:
            cli_path = shutil.which(self._config.claude_cli) if self._config.claude_cli else None
            return StructuredBackend(spec, cli_path=cli_path)
        if not spec.command:
            spec.command = self.build_command(spec.agent_type, spec.prompt, spec.resume_id)
        return PtyBackend(spec, rows=self._config.pty_rows, cols=self._config.pty_cols)
