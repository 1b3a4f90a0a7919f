"""Core exceptions for pgconvert operations.

Every exception carries the process exit code the CLI reports for it, so
schedulers can tell failure classes apart.
"""

from ..constants import (
    EXIT_DESTINATION,
    EXIT_EXPORT,
    EXIT_IMPORT,
    EXIT_INVALID_OPTION,
    EXIT_MISSING_ARGUMENT,
    EXIT_MISSING_DEPENDENCY,
    EXIT_PUBLISH,
    EXIT_SANITIZATION,
    EXIT_SOURCE,
    EXIT_WORKSPACE,
)


class PgConvertError(Exception):
    """Base exception for pgconvert operations."""

    exit_code: int = 1


class CommandError(PgConvertError):
    """External command execution failed."""


class ConfigurationError(PgConvertError):
    """Configuration validation or loading failed."""

    exit_code = EXIT_MISSING_ARGUMENT


class InvalidArgumentError(PgConvertError):
    """Unknown or malformed command line option."""

    exit_code = EXIT_INVALID_OPTION


class MissingArgumentError(ConfigurationError):
    """A required argument was not supplied."""


class MissingDependencyError(PgConvertError):
    """A required external tool is not installed or not executable."""

    exit_code = EXIT_MISSING_DEPENDENCY


class SourceNotFoundError(PgConvertError):
    """No readable source artifact could be located."""

    exit_code = EXIT_SOURCE


class WorkspaceError(PgConvertError):
    """Workspace creation or removal failed."""

    exit_code = EXIT_WORKSPACE


class DestinationError(PgConvertError):
    """Export directory is missing, not writable or on another filesystem."""

    exit_code = EXIT_DESTINATION


class ImportStageError(PgConvertError):
    """Importing the source into the intermediary service failed."""

    exit_code = EXIT_IMPORT


class ExportError(PgConvertError):
    """Dumping roles or databases from the intermediary service failed."""

    exit_code = EXIT_EXPORT


class SanitizationError(PgConvertError):
    """Credential reset or data transform failed."""

    exit_code = EXIT_SANITIZATION


class PackagingError(PgConvertError):
    """Building the export archive failed."""

    exit_code = EXIT_PUBLISH


class PublishError(PgConvertError):
    """Securing or moving the finished archive failed."""

    exit_code = EXIT_PUBLISH
