"""Source artifact discovery."""

import os
from datetime import UTC, datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import SourceNotFoundError

logger = structlog.get_logger()


class SourceArtifact(BaseModel):
    """The newest file matching a prefix, fixed at the moment it was located."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(description="Absolute path to the source file")
    mtime: float = Field(description="Modification time as a POSIX timestamp")
    prefix: str = Field(description="Name prefix the file matched")
    size: int = Field(default=0, description="File size in bytes")

    @property
    def modified_at(self) -> datetime:
        return datetime.fromtimestamp(self.mtime, UTC)


def find_latest(directory: Path | str, prefix: str) -> SourceArtifact:
    """Return the most recently modified regular file named ``prefix*``.

    Ties on modification time resolve to the lexicographically largest name
    so repeated runs over the same directory always pick the same file.

    Raises:
        SourceNotFoundError: Directory unreadable, no match, or match unreadable
    """
    directory = Path(directory)
    if not directory.is_dir() or not os.access(directory, os.R_OK | os.X_OK):
        raise SourceNotFoundError(f"Source directory '{directory}' does not exist or is unreadable")

    candidates: list[tuple[float, str, os.stat_result]] = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.name.startswith(prefix):
                    continue
                if not entry.is_file(follow_symlinks=True):
                    continue
                stat = entry.stat(follow_symlinks=True)
                candidates.append((stat.st_mtime, entry.name, stat))
    except OSError as e:
        raise SourceNotFoundError(f"Could not list source directory '{directory}': {e}") from e

    if not candidates:
        raise SourceNotFoundError(
            f"No source file starting with '{prefix}' found in '{directory}'"
        )

    mtime, name, stat = max(candidates, key=lambda candidate: (candidate[0], candidate[1]))
    path = (directory / name).absolute()
    if not os.access(path, os.R_OK):
        raise SourceNotFoundError(f"Source file '{path}' is not readable")

    logger.info(
        "Located source artifact",
        path=str(path),
        candidates=len(candidates),
        modified=datetime.fromtimestamp(mtime, UTC).isoformat(),
    )
    return SourceArtifact(path=path, mtime=mtime, prefix=prefix, size=stat.st_size)
