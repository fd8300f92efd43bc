"""Batch raw terminal lines into a bounded number of output events.

Terminal UIs redraw many times per second; publishing one event per line
floods every watcher. The coalescer groups complete lines and flushes a
batch when it reaches a line or byte limit, or when the periodic tick
fires with content pending.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 0.08
DEFAULT_MAX_LINES = 12
DEFAULT_MAX_BYTES = 8 * 1024


class OutputCoalescer:
    """Line batcher feeding *on_batch* with ``"\\n"``-joined batches.

    Not thread-safe; feed(), tick() and finish() must be called from the
    event loop that owns the session.
    """

    def __init__(
        self,
        on_batch: Callable[[str], None],
        max_lines: int = DEFAULT_MAX_LINES,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._on_batch = on_batch
        self._max_lines = max_lines
        self._max_bytes = max_bytes
        self._lines: list[str] = []
        self._bytes = 0
        self._fragment = ""
        self._closed = False

    @property
    def pending_lines(self) -> int:
        return len(self._lines)

    @property
    def fragment(self) -> str:
        return self._fragment

    def feed(self, chunk: str) -> None:
        if self._closed or not chunk:
            return
        data = self._fragment + chunk
        parts = data.split("\n")
        # The last element has no terminating newline yet.
        self._fragment = parts.pop()
        for line in parts:
            self._queue_line(line.rstrip("\r"))

    def tick(self) -> None:
        """Timer flush: publish pending lines plus any visible fragment."""
        if self._closed:
            return
        if self._fragment.strip():
            self._queue_line(self._fragment.rstrip("\r"))
            self._fragment = ""
        self.flush()

    def finish(self) -> None:
        """EOF: publish everything that is left and stop accepting input."""
        if self._closed:
            return
        if self._fragment:
            self._queue_line(self._fragment.rstrip("\r"))
            self._fragment = ""
        self.flush()
        self._closed = True

    def flush(self) -> None:
        if not self._lines:
            return
        batch = "\n".join(self._lines)
        self._lines = []
        self._bytes = 0
        self._on_batch(batch)

    def _queue_line(self, line: str) -> None:
        if not line.strip():
            return
        size = len(line.encode("utf-8", errors="replace"))
        if size >= self._max_bytes:
            self.flush()
            self._on_batch(line)
            return
        if self._bytes + size > self._max_bytes:
            self.flush()
        self._lines.append(line)
        self._bytes += size + 1
        if len(self._lines) >= self._max_lines or self._bytes >= self._max_bytes:
            self.flush()

    async def run_ticker(self, interval: float = DEFAULT_FLUSH_INTERVAL) -> None:
        """Call tick() every *interval* seconds until cancelled or finished."""
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                self.tick()
            except Exception:
                logger.exception("Coalescer tick failed")
                raise
