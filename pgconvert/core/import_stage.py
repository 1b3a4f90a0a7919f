"""Import a base backup into the intermediary service."""

import os
import shutil
from pathlib import Path

import structlog

from ..constants import DATA_DIR_MODE
from ..utils import decompressor_command, decompressor_tool, format_size
from .config_loader import IntermediaryConfig, ToolPaths
from .exceptions import CommandError, ImportStageError
from .locator import SourceArtifact
from .safety import DeletionGuard, UnsafePathError
from .service import IntermediaryService, PollTimeoutError, ServiceStateError
from .subprocess_manager import SubprocessManager

logger = structlog.get_logger()


async def extract_archive(
    runner: SubprocessManager,
    tools: ToolPaths,
    source: Path,
    target: Path,
    timeout: float,
) -> None:
    """``<decompressor> -d -c < source | tar -C target -x -p -f -``, both stages checked."""
    await runner.run_pipeline(
        [
            decompressor_command(source, tools),
            [tools.tar, "-C", str(target), "-x", "-p", "-f", "-"],
        ],
        stdin_path=source,
        timeout=timeout,
    )


class ImportStage:
    """Replace the intermediary data directory with a base backup.

    A failure between removing the old data directory and restarting the
    service leaves the intermediary without usable data; nothing is rolled
    back and the next successful run restores it.
    """

    def __init__(
        self,
        config: IntermediaryConfig,
        tools: ToolPaths,
        runner: SubprocessManager,
        extract_timeout: float,
        guard: DeletionGuard | None = None,
    ):
        self.config = config
        self.tools = tools
        self.runner = runner
        self.extract_timeout = extract_timeout
        self.guard = guard or DeletionGuard()
        self.logger = logger.bind(component="import_stage")

    def check_source(self, source: SourceArtifact) -> None:
        """Fail early when the source format has no installed decompressor.

        Raises:
            SourceNotFoundError: Unsupported compression suffix
            MissingDependencyError: Decompressor not installed
        """
        self.tools.resolve([decompressor_tool(source.path), "tar"])

    async def run(self, source: SourceArtifact, service: IntermediaryService) -> None:
        """Stop, replace data, start; raises ImportStageError on any failure."""
        data_dir = self.config.data_dir
        self.logger.info(
            "Importing base backup",
            source=str(source.path),
            size=format_size(source.size),
            data_dir=str(data_dir),
        )
        try:
            await service.stop()
            self._prepare_data_dir(data_dir)
            await self._extract(source.path, data_dir)
            service.mark_data_replaced()
            await service.start()
        except (CommandError, PollTimeoutError, ServiceStateError, UnsafePathError) as e:
            raise ImportStageError(f"Import failed: {e}") from e
        except (OSError, LookupError) as e:
            raise ImportStageError(f"Import failed preparing '{data_dir}': {e}") from e

        self.logger.info("Import complete", data_dir=str(data_dir))

    def _prepare_data_dir(self, data_dir: Path) -> None:
        parent = data_dir.parent
        if not parent.is_dir() or not os.access(parent, os.W_OK):
            raise ImportStageError(f"Data directory parent '{parent}' is missing or not writable")

        if data_dir.exists():
            self.guard.remove_tree(data_dir, "Replace intermediary data directory")

        os.mkdir(data_dir, DATA_DIR_MODE)
        os.chmod(data_dir, DATA_DIR_MODE)
        shutil.chown(data_dir, user=self.config.owner, group=self.config.group)

    async def _extract(self, source: Path, data_dir: Path) -> None:
        self.logger.info("Extracting base backup", data_dir=str(data_dir))
        await extract_archive(self.runner, self.tools, source, data_dir, self.extract_timeout)
