"""Project lookup — resolves a logical name to the directory a session starts in.

Project CRUD lives elsewhere; the bridge only needs ``{path, logical_name}``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProjectRef(BaseModel):
    logical_name: str
    path: Path


class ProjectResolver(Protocol):
    def resolve(self, logical_name: str) -> Optional[ProjectRef]: ...


class DirectoryProjectResolver:
    """Projects are the sub-directories of a single root."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def resolve(self, logical_name: str) -> Optional[ProjectRef]:
        candidate = (self._root / logical_name).resolve()
        try:
            candidate.relative_to(self._root.resolve())
        except ValueError:
            logger.warning("Project name escapes projects root: %r", logical_name)
            return None
        if not candidate.is_dir():
            return None
        return ProjectRef(logical_name=logical_name, path=candidate)

    def working_dir(self, logical_name: str, requested: str = "") -> str:
        """Directory for a new session: explicit request, then project dir, then home."""
        if requested and Path(requested).expanduser().is_dir():
            return str(Path(requested).expanduser())
        project = self.resolve(logical_name) if logical_name else None
        if project is not None:
            return str(project.path)
        return str(Path.home())
