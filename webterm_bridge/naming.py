"""Session naming — stable, collision-free tmux session names.

Two disjoint schemes share the configured prefix:

    <prefix>-<logical>-<sequence>      sequential, e.g. claude-web-api-3
    <prefix>-<logical>-t<epoch_ms>     timestamped, e.g. claude-web-api-t1700000000000

A sequential suffix is pure digits and a timestamped suffix starts with
``t``, so one can never be mistaken for the other.  Names from older
deployments that used a bare epoch suffix are recognised by size
(``>= SEQUENCE_LIMIT``) and treated as timestamped.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Iterable
from typing import Optional

from pydantic import BaseModel

from .errors import InvalidSessionName
from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)

SEQUENCE_LIMIT = 1_000_000_000

_LOGICAL_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class SessionIdentifier(BaseModel):
    logical_name: str
    sequence: Optional[int] = None
    timestamp_ms: Optional[int] = None
    composed_name: str

    @property
    def timestamped(self) -> bool:
        return self.timestamp_ms is not None


def validate_logical_name(logical_name: str) -> str:
    if not logical_name or not _LOGICAL_RE.match(logical_name):
        raise InvalidSessionName(
            f"Invalid logical session name: {logical_name!r}",
            details="Use letters, digits, '-' and '_' only",
        )
    return logical_name


class SessionNaming:
    """Composes, parses and allocates session names for one prefix."""

    def __init__(self, prefix: str, tmux: TmuxAdapter) -> None:
        self.prefix = prefix
        self._tmux = tmux
        self._name_re = re.compile(rf"^{re.escape(prefix)}-(.+)-(t?)(\d+)$")
        self._high_water: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def is_managed(self, name: str) -> bool:
        return bool(name) and name.startswith(self.prefix + "-")

    def compose(self, logical_name: str, sequence: int) -> str:
        validate_logical_name(logical_name)
        if not 0 < sequence < SEQUENCE_LIMIT:
            raise ValueError(f"Sequence out of range: {sequence}")
        return f"{self.prefix}-{logical_name}-{sequence}"

    def compose_timestamped(self, logical_name: str, timestamp_ms: int | None = None) -> str:
        validate_logical_name(logical_name)
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return f"{self.prefix}-{logical_name}-t{timestamp_ms}"

    def parse(self, name: str) -> Optional[SessionIdentifier]:
        """Split a composed name into its parts.  Returns None on any mismatch."""
        m = self._name_re.match(name or "")
        if not m:
            return None
        logical, marker, digits = m.group(1), m.group(2), m.group(3)
        if not _LOGICAL_RE.match(logical):
            return None
        value = int(digits)
        if marker or value >= SEQUENCE_LIMIT:
            return SessionIdentifier(logical_name=logical, timestamp_ms=value, composed_name=name)
        if value == 0 or digits != str(value):
            return None
        return SessionIdentifier(logical_name=logical, sequence=value, composed_name=name)

    def created_at(self, name: str) -> Optional[float]:
        """Creation time (unix seconds) encoded in a timestamped name."""
        ident = self.parse(name)
        if ident is None or ident.timestamp_ms is None:
            return None
        return ident.timestamp_ms / 1000.0

    async def next_sequence(self, logical_name: str, known_names: Iterable[str] = ()) -> int:
        """max(sequence in use for ``logical_name``) + 1, or 1 when none exist."""
        names = [info.name for info in await self._tmux.list_sessions()]
        names.extend(known_names)
        sequences = [self._high_water.get(logical_name, 0)]
        for name in names:
            ident = self.parse(name)
            if ident and ident.logical_name == logical_name and ident.sequence is not None:
                sequences.append(ident.sequence)
        return max(sequences) + 1

    async def allocate(self, logical_name: str, known_names: Iterable[str] = ()) -> SessionIdentifier:
        """Reserve the next sequential name; concurrent callers never share a number."""
        validate_logical_name(logical_name)
        async with self._lock:
            sequence = await self.next_sequence(logical_name, known_names)
            self._high_water[logical_name] = sequence
        name = self.compose(logical_name, sequence)
        logger.debug("Allocated session name %s", name)
        return SessionIdentifier(logical_name=logical_name, sequence=sequence, composed_name=name)
