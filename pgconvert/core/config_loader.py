"""Configuration management for pgconvert runs."""

import shutil
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..constants import (
    DEFAULT_PGSQL_HOST,
    DEFAULT_PGSQL_PORT,
    DEFAULT_SANITISE_WORKSPACE_PREFIX,
    DEFAULT_SERVICE_GROUP,
    DEFAULT_SERVICE_NAME,
    DEFAULT_SERVICE_OWNER,
    DEFAULT_WORKSPACE_PREFIX,
    GZIP_COMPRESSION_LEVEL,
    ROLES_FILENAME,
)
from .exceptions import ConfigurationError, MissingArgumentError, MissingDependencyError

logger = structlog.get_logger()


class ToolPaths(BaseModel):
    """External programs, by name or absolute path."""

    tar: str = "tar"
    gzip: str = "gzip"
    lz4: str = "lz4"
    zstd: str = "zstd"
    service: str = "service"
    pg_dump: str = "pg_dump"
    pg_dumpall: str = "pg_dumpall"
    psql: str = "psql"
    pg_isready: str = "pg_isready"

    def resolve(self, names: list[str]) -> "ToolPaths":
        """Return a copy with ``names`` resolved to absolute executables.

        Raises:
            MissingDependencyError: Any of the tools cannot be found
        """
        resolved: dict[str, str] = {}
        missing: list[str] = []
        for name in names:
            found = shutil.which(getattr(self, name))
            if found is None:
                missing.append(getattr(self, name))
            else:
                resolved[name] = found
        if missing:
            raise MissingDependencyError(
                "Could not find required tool(s): " + ", ".join(f'"{tool}"' for tool in missing)
            )
        return self.model_copy(update=resolved)


class IntermediaryConfig(BaseModel):
    """The local PostgreSQL instance used to re-export a base backup."""

    host: str = DEFAULT_PGSQL_HOST
    port: int = Field(default=DEFAULT_PGSQL_PORT, ge=1, le=65535)
    user: str
    data_dir: Path
    service_name: str = DEFAULT_SERVICE_NAME
    owner: str = DEFAULT_SERVICE_OWNER
    group: str = DEFAULT_SERVICE_GROUP

    @field_validator("data_dir")
    @classmethod
    def _strip_trailing_slash(cls, value: Path) -> Path:
        return Path(str(value).rstrip("/") or "/")


class PublishConfig(BaseModel):
    """Where and how the finished archive is published."""

    export_dir: Path
    prefix: str
    owner: str
    group: str
    mode: int
    timestamp: bool = False

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: Any) -> int:
        if isinstance(value, str):
            try:
                value = int(value, 8)
            except ValueError:
                raise ValueError(f"file mode '{value}' is not an octal number") from None
        if not isinstance(value, int) or not 0 <= value <= 0o7777:
            raise ValueError(f"file mode '{value}' is out of range")
        return value

    @field_validator("prefix")
    @classmethod
    def _plain_prefix(cls, value: str) -> str:
        if not value or "/" in value or value in (".", ".."):
            raise ValueError("export file prefix must be a plain file name")
        return value


class SanitiseOptions(BaseModel):
    """Optional sanitising applied before packaging."""

    new_password: str | None = Field(default=None, repr=False)
    rules_file: Path | None = None
    clear_expiry: bool = True


class ConvertConfig(BaseModel):
    """Full configuration for a base-backup conversion run."""

    source_dir: Path
    source_prefix: str
    intermediary: IntermediaryConfig
    publish: PublishConfig
    sanitise: SanitiseOptions = Field(default_factory=SanitiseOptions)
    include_data: bool = True
    workspace_prefix: str = DEFAULT_WORKSPACE_PREFIX
    compression_level: int = Field(default=GZIP_COMPRESSION_LEVEL, ge=1, le=9)
    tools: ToolPaths = Field(default_factory=ToolPaths)


class SanitiseConfig(BaseModel):
    """Configuration for re-sanitising an existing export archive."""

    source_dir: Path
    source_prefix: str
    publish: PublishConfig
    new_password: str = Field(repr=False)
    clear_expiry: bool = False
    roles_file: str = ROLES_FILENAME
    workspace_prefix: str = DEFAULT_SANITISE_WORKSPACE_PREFIX
    compression_level: int = Field(default=GZIP_COMPRESSION_LEVEL, ge=1, le=9)
    tools: ToolPaths = Field(default_factory=ToolPaths)

    @field_validator("new_password")
    @classmethod
    def _non_empty_password(cls, value: str) -> str:
        if not value:
            raise ValueError("new password must not be empty")
        return value


def read_config_file(config_path: Path | str | None) -> dict[str, Any]:
    """Read a YAML config file into a plain mapping ({} when no path given)."""
    if config_path is None:
        return {}
    path = Path(config_path)
    if not path.is_file():
        raise ConfigurationError(f"Configuration file '{path}' not found")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read configuration file '{path}': {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping")
    logger.debug("Loaded configuration file", path=str(path), keys=sorted(data))
    return data


def merge_overrides(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overrides`` into ``base``, ignoring ``None`` values."""
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_overrides(merged[key], value)
        elif isinstance(value, dict):
            merged[key] = merge_overrides({}, value)
        else:
            merged[key] = value
    return merged


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def build_config(
    model: type[BaseModel], config_path: Path | str | None, overrides: dict[str, Any]
) -> Any:
    """Load YAML defaults, apply command-line overrides and validate.

    Raises:
        MissingArgumentError: A required value is missing or invalid
        ConfigurationError: The config file is unreadable
    """
    data = merge_overrides(read_config_file(config_path), overrides)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MissingArgumentError(f"Missing or invalid argument(s): {_describe(e)}") from e
