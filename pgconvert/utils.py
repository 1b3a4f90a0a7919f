"""Utility functions for pgconvert."""

from datetime import datetime
from pathlib import Path

from .constants import ARCHIVE_SUFFIX, TIMESTAMP_FORMAT
from .core.config_loader import ToolPaths
from .core.exceptions import SourceNotFoundError

# Compressed-tar suffixes and the ToolPaths attribute that decompresses them
DECOMPRESSORS = {
    ".gz": "gzip",
    ".tgz": "gzip",
    ".lz4": "lz4",
    ".zst": "zstd",
}


def format_size(size_bytes: float) -> str:
    """Format bytes into human-readable string.

    Examples:
        >>> format_size(0)
        '0 B'
        >>> format_size(1536870912)
        '1.4 GB'
    """
    if size_bytes == 0:
        return "0 B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def decompressor_tool(source: Path) -> str:
    """Name of the ToolPaths entry that can decompress ``source``."""
    tool = DECOMPRESSORS.get(source.suffix.lower())
    if tool is None:
        raise SourceNotFoundError(
            f"Unsupported source compression '{source.suffix or source.name}' "
            f"(expected one of {', '.join(sorted(DECOMPRESSORS))})"
        )
    return tool


def decompressor_command(source: Path, tools: ToolPaths) -> list[str]:
    """Command that decompresses stdin to stdout for ``source``'s format."""
    return [getattr(tools, decompressor_tool(source)), "-d", "-c"]


def export_filename(prefix: str, timestamp: bool, now: datetime | None = None) -> str:
    """``<prefix>.tar.gz`` or ``<prefix>.<ISO 8601 timestamp>.tar.gz``."""
    if not timestamp:
        return f"{prefix}{ARCHIVE_SUFFIX}"
    now = now or datetime.now()
    return f"{prefix}.{now.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def is_safe_unit_name(name: str) -> bool:
    """True when ``name`` can be used as a single directory name."""
    return (
        bool(name)
        and name not in (".", "..")
        and not name.startswith("-")
        and "/" not in name
        and "\x00" not in name
    )
