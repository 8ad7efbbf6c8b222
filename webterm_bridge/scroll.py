"""Scroll bridge — drives tmux copy-mode on behalf of touch/web clients.

Failures are reported as ``False``, never raised.
"""

from __future__ import annotations

import logging
from typing import Literal, Union

from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)

Direction = Literal["up", "down"]
Granularity = Union[Literal["line", "page", "halfpage"], int]

_MAX_REPEAT = 10_000


def copy_mode_command(direction: Direction, granularity: Granularity) -> tuple[str, int | None]:
    """Map a scroll request to a tmux copy-mode command and repeat count."""
    if direction not in ("up", "down"):
        raise ValueError(f"Invalid direction: {direction!r}")
    if isinstance(granularity, bool):
        raise ValueError("Granularity must be a mode or a line count")
    if isinstance(granularity, int):
        if not 0 < granularity <= _MAX_REPEAT:
            raise ValueError(f"Line count out of range: {granularity}")
        return f"scroll-{direction}", granularity
    if granularity == "line":
        return f"scroll-{direction}", None
    if granularity == "page":
        return f"page-{direction}", None
    if granularity == "halfpage":
        return f"halfpage-{direction}", None
    raise ValueError(f"Invalid scroll mode: {granularity!r}")


class ScrollBridge:
    def __init__(self, tmux: TmuxAdapter) -> None:
        self._tmux = tmux

    async def scroll(self, session_id: str, direction: Direction, granularity: Granularity = "line") -> bool:
        try:
            command, repeat = copy_mode_command(direction, granularity)
        except ValueError as exc:
            logger.warning("Rejected scroll for %s: %s", session_id, exc)
            return False
        try:
            if not await self._tmux.in_copy_mode(session_id):
                if not await self._tmux.enter_copy_mode(session_id):
                    logger.error("Could not enter copy-mode in %s", session_id)
                    return False
            return await self._tmux.copy_mode_command(session_id, command, repeat)
        except Exception:
            logger.exception("Scroll failed for %s", session_id)
            return False

    async def go_to_bottom_and_exit(self, session_id: str) -> bool:
        """Jump to the latest output and leave copy-mode."""
        try:
            if not await self._tmux.in_copy_mode(session_id):
                return True
            if not await self._tmux.copy_mode_command(session_id, "history-bottom"):
                return False
            return await self._tmux.exit_copy_mode(session_id)
        except Exception:
            logger.exception("Go-to-bottom failed for %s", session_id)
            return False
