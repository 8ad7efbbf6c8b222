"""Reconnect/replay protocol.

Brings a (re)joining client's screen in line with the tmux pane by sending
a captured snapshot instead of buffered deltas:

    1. clear screen + home cursor
    2. the captured pane (scrollback included), CRLF line endings
    3. a cursor-position sequence for tmux's cursor, converted to 1-based

Frames are spaced out slightly so the renderer applies them in order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)

CLEAR_AND_HOME = "\x1b[2J\x1b[H"

ReplaySink = Callable[[str], Awaitable[None]]


def to_crlf(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


def cursor_sequence(x: int, y: int) -> str:
    """CUP for tmux's 0-based ``(x, y)``: ESC[row;colH, 1-based."""
    return f"\x1b[{y + 1};{x + 1}H"


class ReplayProtocol:
    def __init__(
        self,
        tmux: TmuxAdapter,
        settle_delay: float = 0.5,
        step_delay: float = 0.05,
    ) -> None:
        self._tmux = tmux
        self.settle_delay = settle_delay
        self.step_delay = step_delay

    async def replay(self, session_name: str, sink: ReplaySink, settle: bool = True) -> bool:
        """Push the current screen of ``session_name`` into ``sink``.

        Returns False (and sends nothing) when the capture is empty or
        fails.  Never raises; replay is advisory.
        """
        try:
            if settle and self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            content = await self._tmux.capture_pane(session_name, scrollback=True, escapes=True)
            if not content or not content.strip():
                logger.debug("Nothing to replay for %s", session_name)
                return False
            cursor = await self._tmux.cursor_position(session_name)

            await sink(CLEAR_AND_HOME)
            await asyncio.sleep(self.step_delay)
            await sink(to_crlf(content.rstrip("\n")))
            if cursor is not None:
                await asyncio.sleep(self.step_delay)
                await sink(cursor_sequence(*cursor))
            logger.info("Replayed %d chars of %s", len(content), session_name)
            return True
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Replay failed for %s", session_name)
            return False
