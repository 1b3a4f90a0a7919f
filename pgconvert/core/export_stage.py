"""Dump roles and databases from the intermediary service."""

import os
from dataclasses import dataclass
from pathlib import Path

import structlog

from ..constants import (
    DATA_FILENAME,
    DUMP_FILE_MODE,
    MAINTENANCE_DATABASE,
    RESERVED_UNITS,
    ROLES_FILENAME,
    SCHEMA_FILENAME,
    SQL_COMMENT_PREFIX,
    UNIT_DIR_MODE,
)
from ..utils import is_safe_unit_name
from .config_loader import ToolPaths
from .exceptions import CommandError, ExportError
from .service import IntermediaryService, ServiceStateError
from .subprocess_manager import LinePrefixFilter, SubprocessManager
from .workspace import Workspace

logger = structlog.get_logger()

LIST_DATABASES_QUERY = "SELECT datname FROM pg_database ORDER BY datname"


@dataclass(frozen=True)
class Unit:
    """One exported database."""

    name: str
    schema_path: Path
    data_path: Path | None = None


def strip_comments() -> LinePrefixFilter:
    return LinePrefixFilter(SQL_COMMENT_PREFIX)


class ExportStage:
    """Enumerate databases and dump roles, schemas and data as plain SQL."""

    def __init__(
        self,
        service: IntermediaryService,
        tools: ToolPaths,
        runner: SubprocessManager,
        include_data: bool = True,
        dump_timeout: float = 14400,
        command_timeout: float = 120,
    ):
        self.service = service
        self.tools = tools
        self.runner = runner
        self.include_data = include_data
        self.dump_timeout = dump_timeout
        self.command_timeout = command_timeout
        self.logger = logger.bind(component="export_stage")

    async def list_units(self) -> list[str]:
        """Database names on the intermediary, reserved ones removed, sorted.

        Raises:
            ExportError: Query failed, no databases, or an unusable name
        """
        self._require_service()
        try:
            result = await self.runner.run_command(
                [
                    self.tools.psql,
                    *self.service.connection_args,
                    "-d",
                    MAINTENANCE_DATABASE,
                    "-q",
                    "-A",
                    "-t",
                    "-X",
                    "-c",
                    LIST_DATABASES_QUERY,
                ],
                timeout=self.command_timeout,
            )
        except CommandError as e:
            raise ExportError(f"Could not list databases: {e}") from e

        names = sorted(
            {line.strip() for line in str(result.stdout).splitlines() if line.strip()}
            - RESERVED_UNITS
        )
        if not names:
            raise ExportError("No database(s) found on the intermediary service")

        unsafe = [name for name in names if not is_safe_unit_name(name)]
        if unsafe:
            raise ExportError(f"Database name(s) cannot be exported as directories: {unsafe}")

        self.logger.info("Found databases to export", count=len(names), databases=names)
        return names

    async def dump_roles(self, workspace: Workspace) -> Path:
        """Dump cluster-wide roles to ``roles.sql`` at the workspace root."""
        self._require_service()
        roles_path = workspace / ROLES_FILENAME
        self.logger.info("Dumping cluster roles")
        await self._dump(
            [
                self.tools.pg_dumpall,
                "-g",
                "--quote-all-identifiers",
                "--clean",
                "--if-exists",
                *self.service.connection_args,
            ],
            roles_path,
            "cluster roles",
        )
        return roles_path

    async def dump_units(self, workspace: Workspace, names: list[str]) -> list[Unit]:
        """Dump schema (and data unless disabled) for every database."""
        self._require_service()
        units = []
        for name in names:
            units.append(await self._dump_unit(workspace, name))
        self.logger.info("Database dumps complete", count=len(units), include_data=self.include_data)
        return units

    async def _dump_unit(self, workspace: Workspace, name: str) -> Unit:
        self.logger.info("Dumping database", database=name)
        unit_dir = workspace / name
        try:
            os.mkdir(unit_dir, UNIT_DIR_MODE)
            os.chmod(unit_dir, UNIT_DIR_MODE)
        except OSError as e:
            raise ExportError(f"Could not create directory for database '{name}': {e}") from e

        schema_path = unit_dir / SCHEMA_FILENAME
        await self._dump(
            [
                self.tools.pg_dump,
                "-s",
                "--quote-all-identifiers",
                "--clean",
                "--if-exists",
                *self.service.connection_args,
                "-d",
                name,
            ],
            schema_path,
            f"schema of '{name}'",
        )

        data_path = None
        if self.include_data:
            data_path = unit_dir / DATA_FILENAME
            await self._dump(
                [
                    self.tools.pg_dump,
                    "--quote-all-identifiers",
                    "--no-unlogged-table-data",
                    "--data-only",
                    "--encoding=UTF-8",
                    *self.service.connection_args,
                    "-d",
                    name,
                ],
                data_path,
                f"data of '{name}'",
            )

        return Unit(name=name, schema_path=schema_path, data_path=data_path)

    async def _dump(self, cmd: list[str], output: Path, what: str) -> None:
        try:
            await self.runner.stream_to_file(
                cmd,
                output,
                transform=strip_comments,
                mode=DUMP_FILE_MODE,
                timeout=self.dump_timeout,
            )
        except (CommandError, OSError) as e:
            raise ExportError(f"Dump of {what} failed: {e}") from e

    def _require_service(self) -> None:
        try:
            self.service.require_started()
        except ServiceStateError as e:
            raise ExportError(str(e)) from e
