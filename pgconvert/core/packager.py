"""Build the compressed export archive from a workspace."""

import os
from pathlib import Path

import structlog

from ..constants import DUMP_FILE_MODE, GZIP_COMPRESSION_LEVEL
from ..utils import format_size
from .config_loader import ToolPaths
from .exceptions import CommandError, PackagingError
from .subprocess_manager import SubprocessManager
from .workspace import Workspace

logger = structlog.get_logger()


class Packager:
    """``tar | gzip`` of the workspace contents into ``<workspace>/<name>``.

    Top-level entries are listed explicitly and sorted, so archive member
    names never carry a ``./`` prefix (GNU and BSD tar agree) and the archive
    never contains itself.
    """

    def __init__(
        self,
        tools: ToolPaths,
        runner: SubprocessManager,
        compression_level: int = GZIP_COMPRESSION_LEVEL,
        timeout: float = 7200,
    ):
        self.tools = tools
        self.runner = runner
        self.compression_level = compression_level
        self.timeout = timeout
        self.logger = logger.bind(component="packager")

    def entries(self, workspace: Workspace, archive_name: str) -> list[str]:
        """Top-level workspace entries to archive, excluding the archive itself."""
        return sorted(name for name in os.listdir(workspace.path) if name != archive_name)

    async def build(self, workspace: Workspace, archive_name: str) -> Path:
        """Create the archive; raises PackagingError if any stage fails."""
        archive_path = workspace / archive_name
        try:
            entries = self.entries(workspace, archive_name)
        except OSError as e:
            raise PackagingError(f"Could not list workspace '{workspace}': {e}") from e
        if not entries:
            raise PackagingError(f"Workspace '{workspace}' has nothing to package")
        option_like = [name for name in entries if name.startswith("-")]
        if option_like:
            raise PackagingError(f"Refusing to archive entries that look like tar options: {option_like}")

        self.logger.info("Packaging export", archive=archive_name, entries=len(entries))
        try:
            await self.runner.run_pipeline(
                [
                    [self.tools.tar, "-cf", "-", "-C", str(workspace.path), *entries],
                    [self.tools.gzip, "-q", f"-{self.compression_level}"],
                ],
                stdout_path=archive_path,
                stdout_mode=DUMP_FILE_MODE,
                timeout=self.timeout,
            )
        except (CommandError, OSError) as e:
            raise PackagingError(f"Packaging failed: {e}") from e

        self.logger.info(
            "Export packaged",
            archive=str(archive_path),
            size=format_size(archive_path.stat().st_size),
        )
        return archive_path
