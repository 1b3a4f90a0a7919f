"""Logging configuration for pgconvert with console, file and syslog output."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler, SysLogHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

SYSLOG_SOCKET = "/dev/log"


def setup_logging(
    log_level: str | None = None,
    log_file: Path | str | None = None,
    use_syslog: bool = False,
    max_file_size_mb: int = 10,
) -> None:
    """Setup logging: console plus optional rotating file and syslog.

    Console output goes to stderr so stdout stays free for tooling that
    wraps the command.

    Args:
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        log_file: Optional JSON log file
        use_syslog: Also send events to the local syslog daemon
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    log_level_num = getattr(logging, log_level.upper(), logging.INFO)

    # Clear any existing handlers to prevent duplicates
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level_num)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stderr.isatty()
        else structlog.processors.JSONRenderer()
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level_num)
    console_handler.setFormatter(ProcessorFormatter(processor=renderer))
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=0,  # Don't keep old files, just truncate
            encoding="utf-8",
        )
        file_handler.setLevel(log_level_num)
        file_handler.setFormatter(
            ProcessorFormatter(processor=structlog.processors.JSONRenderer())
        )
        root_logger.addHandler(file_handler)

    if use_syslog and Path(SYSLOG_SOCKET).exists():
        syslog_handler = SysLogHandler(address=SYSLOG_SOCKET)
        syslog_handler.setLevel(log_level_num)
        syslog_handler.setFormatter(
            ProcessorFormatter(
                processor=structlog.processors.KeyValueRenderer(
                    key_order=["event", "component"], drop_missing=True
                )
            )
        )
        root_logger.addHandler(syslog_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )

    get_logger().debug(
        "Logging system initialized",
        log_level=log_level,
        log_file=str(log_file) if log_file else None,
        syslog=use_syslog,
    )


def get_logger() -> Any:
    """Get the pgconvert run logger."""
    return structlog.get_logger("pgconvert")
