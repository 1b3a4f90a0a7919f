"""Secure the finished archive and move it into place atomically."""

import os
import shutil
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import DestinationError, PublishError

logger = structlog.get_logger()


class PublishedArtifact(BaseModel):
    """The archive as it appears to consumers of the export directory."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(description="Final archive path")
    owner: str = Field(description="Owning user")
    group: str = Field(description="Owning group")
    mode: int = Field(description="Permission bits")


class Publisher:
    """Ownership, permissions and a single ``rename`` into the export dir.

    Nothing is written to the export directory before the rename, so a
    failure at any step leaves its listing unchanged.
    """

    def __init__(self):
        self.logger = logger.bind(component="publisher")

    def preflight(self, export_dir: Path, workspace_root: Path) -> None:
        """Check the export dir is writable and shares a filesystem with workspaces.

        Raises:
            DestinationError: Otherwise
        """
        if not export_dir.is_dir() or not os.access(export_dir, os.W_OK | os.X_OK):
            raise DestinationError(
                f"Export directory '{export_dir}' does not exist (or is not writeable)"
            )
        try:
            same_device = os.stat(export_dir).st_dev == os.stat(workspace_root).st_dev
        except OSError as e:
            raise DestinationError(f"Could not inspect '{workspace_root}': {e}") from e
        if not same_device:
            raise DestinationError(
                f"Export directory '{export_dir}' is not on the same filesystem as the "
                f"workspace root '{workspace_root}'; choose a workspace prefix on that "
                "filesystem so the final move is atomic"
            )

    def publish(
        self, archive: Path, export_dir: Path, owner: str, group: str, mode: int
    ) -> PublishedArtifact:
        """Apply owner, group and mode (each fatal), then rename into place."""
        destination = export_dir / archive.name

        try:
            shutil.chown(archive, user=owner)
        except (OSError, LookupError) as e:
            raise PublishError(f"Could not set owner '{owner}' on '{archive}': {e}") from e
        try:
            shutil.chown(archive, group=group)
        except (OSError, LookupError) as e:
            raise PublishError(f"Could not set group '{group}' on '{archive}': {e}") from e
        try:
            os.chmod(archive, mode)
        except OSError as e:
            raise PublishError(f"Could not set mode {mode:o} on '{archive}': {e}") from e

        self.logger.info("Moving export into place", destination=str(destination))
        try:
            os.rename(archive, destination)
        except OSError as e:
            raise PublishError(f"Could not move '{archive}' to '{destination}': {e}") from e

        return PublishedArtifact(path=destination, owner=owner, group=group, mode=mode)
