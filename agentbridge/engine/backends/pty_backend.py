"""Interactive backend: an agent CLI attached to a pseudo-terminal.

The child gets the slave side of a fresh PTY as stdin/stdout/stderr and
its own session (so signals can target its whole process group). The
parent keeps the master side non-blocking and reads it through the
event loop's reader callback; EOF or EIO on the master means the child
side is gone.
"""
from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import AsyncIterator

from agentbridge.engine.backends.base import (
    Backend,
    BackendOutput,
    ExitOutcome,
    LaunchSpec,
    TerminalChunk,
)
from agentbridge.engine.models import BackendKind

logger = logging.getLogger(__name__)

_READ_SIZE = 65536
# How long wait() lets the reader drain after the child exits.
_DRAIN_TIMEOUT = 1.0


def set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def describe_exit(returncode: int | None) -> str | None:
    if returncode is None or returncode == 0:
        return None
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"process terminated by signal {name}"
    return f"process exited with code {returncode}"


class PtyBackend(Backend):
    """Runs ``spec.command`` on a PTY in ``spec.workspace_path``."""

    kind = BackendKind.INTERACTIVE

    def __init__(self, spec: LaunchSpec, rows: int = 40, cols: int = 120) -> None:
        super().__init__(spec)
        self._rows = rows
        self._cols = cols
        self._proc: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._reading = False
        self._chunks: asyncio.Queue[str | None] = asyncio.Queue()
        self._eof = asyncio.Event()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._interrupted = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if not self.spec.command:
            raise ValueError("PTY backend requires a command")
        master_fd, slave_fd = pty.openpty()
        try:
            set_winsize(slave_fd, self._rows, self._cols)
            env = dict(os.environ)
            env.setdefault("TERM", "xterm-256color")
            env["COLUMNS"] = str(self._cols)
            env["LINES"] = str(self._rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.spec.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.spec.workspace_path or None,
                env=env,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        # The child holds its own copy; keeping ours would hide EOF.
        os.close(slave_fd)
        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._reading = True
        logger.info(
            "PTY process started session=%s pid=%s cmd=%s cwd=%s",
            self.session_id, self._proc.pid, self.spec.command[0], self.spec.workspace_path,
        )

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave handle is closed.
            data = b""
        if not data:
            self._finish_reading()
            return
        text = self._decoder.decode(data)
        if text:
            self._chunks.put_nowait(text)

    def _finish_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        self._reading = False
        if self._eof.is_set():
            return
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._chunks.put_nowait(tail)
        self._chunks.put_nowait(None)
        self._eof.set()

    async def stream_output(self) -> AsyncIterator[BackendOutput]:
        while True:
            text = await self._chunks.get()
            if text is None:
                return
            yield TerminalChunk(text)

    async def deliver_input(self, data: str) -> None:
        if self._master_fd is None or not self.running:
            raise RuntimeError(f"terminal for session {self.session_id} is closed")
        view = memoryview(data.encode("utf-8"))
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    async def stop(self, force: bool = False) -> None:
        if not self.running:
            return
        assert self._proc is not None
        sig = signal.SIGKILL if force else signal.SIGINT
        self._interrupted = True
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            self._proc.send_signal(sig)
        logger.info("Sent %s session=%s pid=%s", sig.name, self.session_id, self._proc.pid)

    async def wait(self) -> ExitOutcome:
        if self._proc is None:
            return ExitOutcome(error="process was never started")
        returncode = await self._proc.wait()
        try:
            await asyncio.wait_for(self._eof.wait(), timeout=_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            # A grandchild still holds the terminal open.
            logger.debug("PTY did not reach EOF after exit session=%s", self.session_id)
        self._close_master()
        logger.info(
            "PTY process exited session=%s pid=%s code=%s",
            self.session_id, self._proc.pid, returncode,
        )
        return ExitOutcome(
            returncode=returncode,
            error=None if self._interrupted else describe_exit(returncode),
            interrupted=self._interrupted,
        )

    def _close_master(self) -> None:
        self._finish_reading()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError as exc:
                logger.debug("Closing PTY master failed session=%s err=%s", self.session_id, exc)
            self._master_fd = None
