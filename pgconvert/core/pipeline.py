"""End-to-end conversion and sanitising runs.

Both pipelines follow the same shape: locate the source, check the export
directory, then do all work inside one workspace that is removed on every
exit path. The export directory only ever changes through the publisher's
final rename.
"""

import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import structlog

from ..utils import decompressor_tool, export_filename
from .config_loader import ConvertConfig, SanitiseConfig
from .exceptions import CommandError, SanitizationError, SourceNotFoundError, WorkspaceError
from .export_stage import ExportStage
from .import_stage import ImportStage, extract_archive
from .locator import SourceArtifact, find_latest
from .packager import Packager
from .publisher import PublishedArtifact, Publisher
from .safety import DeletionGuard
from .sanitize import SanitizationEngine
from .service import IntermediaryService, ReadinessPoller
from .settings import PipelineTimeoutSettings
from .subprocess_manager import SubprocessManager
from .workspace import Workspace, WorkspaceManager

logger = structlog.get_logger()


def _warn_cleanup_after_publish(log, artifact: PublishedArtifact, error: WorkspaceError) -> None:
    # The export is already in place; a leftover workspace does not fail the run
    log.warning("Export published but workspace cleanup failed", export=str(artifact.path), error=str(error))


class ConversionPipeline:
    """Base backup -> intermediary server -> per-database SQL export archive."""

    def __init__(
        self,
        config: ConvertConfig,
        settings: PipelineTimeoutSettings | None = None,
        runner: SubprocessManager | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.settings = settings or PipelineTimeoutSettings()
        self.runner = runner or SubprocessManager()
        self.clock = clock
        self.logger = logger.bind(component="conversion")

        tools = config.tools
        guard = DeletionGuard()
        self.workspaces = WorkspaceManager(config.workspace_prefix, guard)
        self.service = IntermediaryService(
            config.intermediary,
            tools,
            self.runner,
            ReadinessPoller.from_settings(self.settings),
            command_timeout=self.settings.service_timeout,
        )
        self.importer = ImportStage(
            config.intermediary, tools, self.runner, self.settings.extract_timeout, guard
        )
        self.exporter = ExportStage(
            self.service,
            tools,
            self.runner,
            include_data=config.include_data,
            dump_timeout=self.settings.dump_timeout,
            command_timeout=self.settings.command_timeout,
        )
        self.sanitizer = SanitizationEngine(tools, self.runner, self.settings.command_timeout)
        self.packager = Packager(
            tools, self.runner, config.compression_level, self.settings.archive_timeout
        )
        self.publisher = Publisher()

    def locate(self) -> SourceArtifact:
        return find_latest(self.config.source_dir, self.config.source_prefix)

    async def run(self) -> PublishedArtifact:
        started = time.monotonic()
        publish = self.config.publish

        source = self.locate()
        self.importer.check_source(source)
        self.publisher.preflight(publish.export_dir, self.workspaces.root)
        archive_name = export_filename(publish.prefix, publish.timestamp, self.clock())

        artifact = None
        try:
            with self.workspaces.scope() as workspace:
                await self.importer.run(source, self.service)
                await self._export(workspace)
                archive = await self.packager.build(workspace, archive_name)
                artifact = self.publisher.publish(
                    archive, publish.export_dir, publish.owner, publish.group, publish.mode
                )
        except WorkspaceError as e:
            if artifact is None:
                raise
            _warn_cleanup_after_publish(self.logger, artifact, e)

        self.logger.info(
            "Conversion complete",
            export=str(artifact.path),
            seconds=round(time.monotonic() - started, 1),
        )
        return artifact

    async def _export(self, workspace: Workspace) -> None:
        options = self.config.sanitise
        units = await self.exporter.list_units()

        # Data rules must run before the data is dumped
        if options.rules_file is not None:
            rules = self.sanitizer.load_rules(options.rules_file, units)
            await self.sanitizer.apply_data_rules(rules, self.service)

        roles_path = await self.exporter.dump_roles(workspace)
        if options.new_password:
            self.sanitizer.reset_credentials(roles_path, options.new_password, options.clear_expiry)

        await self.exporter.dump_units(workspace, units)


class SanitisePipeline:
    """Existing export archive -> same archive with every role password reset."""

    def __init__(
        self,
        config: SanitiseConfig,
        settings: PipelineTimeoutSettings | None = None,
        runner: SubprocessManager | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.settings = settings or PipelineTimeoutSettings()
        self.runner = runner or SubprocessManager()
        self.clock = clock
        self.logger = logger.bind(component="sanitise")

        self.workspaces = WorkspaceManager(config.workspace_prefix)
        self.sanitizer = SanitizationEngine(config.tools, self.runner, self.settings.command_timeout)
        self.packager = Packager(
            config.tools, self.runner, config.compression_level, self.settings.archive_timeout
        )
        self.publisher = Publisher()

    def locate(self) -> SourceArtifact:
        return find_latest(self.config.source_dir, self.config.source_prefix)

    async def run(self) -> PublishedArtifact:
        started = time.monotonic()
        publish = self.config.publish
        roles_file = Path(self.config.roles_file)
        if roles_file.is_absolute() or ".." in roles_file.parts:
            raise SanitizationError(f"Role file '{roles_file}' must be relative to the archive root")

        source = self.locate()
        self.config.tools.resolve([decompressor_tool(source.path)])
        self.publisher.preflight(publish.export_dir, self.workspaces.root)
        archive_name = export_filename(publish.prefix, publish.timestamp, self.clock())

        artifact = None
        try:
            with self.workspaces.scope() as workspace:
                await self._unpack(source, workspace)
                self.sanitizer.reset_credentials(
                    workspace / str(roles_file), self.config.new_password, self.config.clear_expiry
                )
                archive = await self.packager.build(workspace, archive_name)
                artifact = self.publisher.publish(
                    archive, publish.export_dir, publish.owner, publish.group, publish.mode
                )
        except WorkspaceError as e:
            if artifact is None:
                raise
            _warn_cleanup_after_publish(self.logger, artifact, e)

        self.logger.info(
            "Sanitise complete",
            export=str(artifact.path),
            seconds=round(time.monotonic() - started, 1),
        )
        return artifact

    async def _unpack(self, source: SourceArtifact, workspace: Workspace) -> None:
        self.logger.info("Unpacking source archive", source=str(source.path))
        try:
            await extract_archive(
                self.runner,
                self.config.tools,
                source.path,
                workspace.path,
                self.settings.extract_timeout,
            )
        except CommandError as e:
            raise SourceNotFoundError(f"Could not unpack source '{source.path}': {e}") from e
