"""PTY attachment process — runs ``tmux attach-session`` in a pseudo-terminal.

Output is read with ``loop.add_reader`` on the non-blocking master fd, so
the event loop is never blocked and no executor thread is tied up per
session.  Bytes are decoded incrementally; a multi-byte character split
across two reads is reassembled rather than replaced.
"""

from __future__ import annotations

import asyncio
import codecs
import errno
import logging
import os
from typing import Callable, Optional, Protocol

from ptyprocess import PtyProcess

logger = logging.getLogger(__name__)

_READ_SIZE = 4096

DataCallback = Callable[[str], None]
ExitCallback = Callable[[Optional[int]], None]


class Attachment(Protocol):
    """What a TerminalSession needs from its attachment process."""

    pid: Optional[int]

    def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    async def close(self, force: bool = False) -> None: ...

    def isalive(self) -> bool: ...


class AttachmentFactory(Protocol):
    def __call__(
        self,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> Attachment: ...


class PtyAttachment:
    """A ptyprocess child wired into the running asyncio loop."""

    def __init__(
        self,
        proc: PtyProcess,
        loop: asyncio.AbstractEventLoop,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> None:
        self._proc = proc
        self._loop = loop
        self._on_data = on_data
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False
        self._reaper: Optional[asyncio.Future] = None
        self.pid: Optional[int] = proc.pid
        os.set_blocking(proc.fd, False)
        loop.add_reader(proc.fd, self._on_readable)

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> "PtyAttachment":
        """Start ``argv`` in a new PTY.  Raises OSError if the spawn fails."""
        loop = asyncio.get_running_loop()
        proc = PtyProcess.spawn(
            argv,
            cwd=cwd or None,
            env=env,
            dimensions=(rows, cols),
        )
        proc.delayafterclose = 0.0
        return cls(proc, loop, on_data, on_exit)

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._proc.fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError as exc:
            # Linux reports EIO on the master once the child side is gone
            if exc.errno != errno.EIO:
                logger.warning("PTY read error (pid=%s): %s", self.pid, exc)
            chunk = b""
        if not chunk:
            self._finish()
            return
        text = self._decoder.decode(chunk)
        if text:
            self._on_data(text)

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._loop.remove_reader(self._proc.fd)
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._on_data(tail)
        exit_code: Optional[int] = None
        try:
            if not self._proc.isalive():
                exit_code = self._proc.exitstatus
        except Exception:
            logger.debug("Error polling PTY child %s", self.pid, exc_info=True)
        # ptyprocess sleeps between signals; reap off the loop thread
        self._reaper = self._loop.run_in_executor(None, self._terminate, True)
        self._on_exit(exit_code)

    def _terminate(self, force: bool) -> None:
        try:
            self._proc.close(force=force)
        except Exception:
            logger.debug("Error closing PTY child %s", self.pid, exc_info=True)

    def write(self, data: bytes) -> None:
        self._proc.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self._proc.setwinsize(rows, cols)

    def isalive(self) -> bool:
        return not self._closed and self._proc.isalive()

    async def close(self, force: bool = False) -> None:
        """Stop reading and terminate the child.  Does not fire ``on_exit``."""
        if self._closed:
            return
        self._closed = True
        self._loop.remove_reader(self._proc.fd)
        await self._loop.run_in_executor(None, self._terminate, force)
