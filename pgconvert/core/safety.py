"""Safety guards for recursive deletions."""

import shutil
from pathlib import Path

import structlog

from .exceptions import PgConvertError

logger = structlog.get_logger()


class UnsafePathError(PgConvertError):
    """Safety validation refused a deletion."""


class DeletionGuard:
    """Guards ``rm -rf`` style removals against catastrophic targets."""

    # Paths that must never be removed themselves
    FORBIDDEN_PATHS = [
        "/",
        "/bin",
        "/boot",
        "/dev",
        "/etc",
        "/home",
        "/lib",
        "/mnt",
        "/opt",
        "/proc",
        "/root",
        "/sbin",
        "/srv",
        "/sys",
        "/tmp",
        "/usr",
        "/var",
        "/var/lib",
        "/var/lib/postgresql",
        "/var/log",
        "/var/tmp",
    ]

    def __init__(self):
        self.logger = logger.bind(component="deletion_guard")

    def validate_deletion_path(self, path: Path | str, required_prefix: str | None = None) -> tuple[bool, str]:
        """Validate that a directory tree is safe to delete.

        Args:
            path: Directory to validate for deletion
            required_prefix: When given, the resolved path must start with it

        Returns:
            Tuple of (is_safe: bool, reason: str)
        """
        raw = str(path)
        if ".." in Path(raw).parts:
            return False, f"Path '{raw}' contains parent directory traversal"

        resolved = Path(raw).resolve()
        resolved_str = str(resolved)

        if resolved_str in self.FORBIDDEN_PATHS:
            return False, f"Path '{resolved_str}' is a protected system directory"

        if len(resolved.parts) < 3:
            return False, f"Path '{resolved_str}' is too close to the filesystem root"

        if required_prefix is not None:
            prefix = str(Path(required_prefix).parent.resolve() / Path(required_prefix).name)
            if not resolved_str.startswith(prefix) or resolved_str == prefix:
                return False, f"Path '{resolved_str}' is outside '{required_prefix}*'"

        return True, f"Path validated: {resolved_str}"

    def remove_tree(self, path: Path | str, reason: str, required_prefix: str | None = None) -> None:
        """Recursively delete ``path`` after validation.

        Raises:
            UnsafePathError: The path failed validation
            OSError: The removal itself failed
        """
        is_safe, validation_reason = self.validate_deletion_path(path, required_prefix)
        if not is_safe:
            self.logger.error(
                "Deletion blocked by safety check", path=str(path), reason=validation_reason
            )
            raise UnsafePathError(f"SAFETY BLOCK: {validation_reason}")

        shutil.rmtree(path)
        self.logger.debug("Directory removed", path=str(path), reason=reason)
