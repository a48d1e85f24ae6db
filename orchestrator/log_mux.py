"""
orchestrator/log_mux.py

One LogMultiplexer per service: copies every line the child prints to the
console (tagged, colored) and appends the raw line to the service's log file.
"""
from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from pathlib import Path
from typing import IO, List, Optional, TextIO

from libs import console


class LogMultiplexer:
    def __init__(
        self,
        label: str,
        stream: asyncio.StreamReader,
        log_path: Path,
        *,
        color: Optional[str] = None,
        console_stream: Optional[TextIO] = None,
    ) -> None:
        self.label = label
        self.stream = stream
        self.log_path = log_path
        self.color = color
        self.console_stream = console_stream
        self.lines_written = 0
        self._log: Optional[IO[bytes]] = None
        self._task: Optional["asyncio.Task[None]"] = None

    def start(self) -> None:
        self._log = self.log_path.open("ab")
        self._task = asyncio.create_task(self._pump(), name=f"logmux:{self.label}")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _next_line(self) -> bytes:
        """Next line including its newline; b"" at EOF.

        Lines longer than the reader limit are collected in chunks instead of
        failing the way `readline()` does.
        """
        parts: List[bytes] = []
        while True:
            try:
                parts.append(await self.stream.readuntil(b"\n"))
                break
            except asyncio.LimitOverrunError as exc:
                parts.append(await self.stream.read(exc.consumed))
            except asyncio.IncompleteReadError as exc:
                parts.append(exc.partial)
                break
        return b"".join(parts)

    async def _pump(self) -> None:
        while True:
            raw = await self._next_line()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            console.emit(self.label, line, self.color, stream=self.console_stream)
            if self._log is not None:
                self._log.write(raw if raw.endswith(b"\n") else raw + b"\n")
                self._log.flush()
            self.lines_written += 1

    async def stop(self, drain_timeout: float = 2.0) -> None:
        """Let the reader drain until EOF for at most `drain_timeout`, then cancel."""
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=drain_timeout)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
            except Exception:
                pass  # reported below
        if task is not None and task.done() and not task.cancelled():
            exc = task.exception()
            if exc is not None:
                console.warn(f"log reader for {self.label} failed: {exc}", stream=self.console_stream)
        if self._log is not None:
            with contextlib.suppress(Exception):
                self._log.flush()
                self._log.close()
            self._log = None


def tail_log(log_path: Path, lines: int = 120) -> List[str]:
    try:
        with log_path.open("r", encoding="utf-8", errors="replace") as handle:
            return [ln.rstrip("\r\n") for ln in deque(handle, maxlen=lines)]
    except OSError:
        return []
