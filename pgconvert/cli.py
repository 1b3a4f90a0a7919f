"""Command line entry point for pgconvert."""

import argparse
import asyncio
import os
import signal
import sys
from collections.abc import Sequence
from typing import Any, NoReturn

from dotenv import load_dotenv
from pydantic import ValidationError

from . import __version__
from .constants import EXIT_INTERRUPTED, EXIT_OK
from .core.config_loader import ConvertConfig, SanitiseConfig, build_config
from .core.exceptions import (
    ConfigurationError,
    InvalidArgumentError,
    MissingArgumentError,
    PgConvertError,
)
from .core.logging_config import get_logger, setup_logging
from .core.pipeline import ConversionPipeline, SanitisePipeline
from .core.publisher import PublishedArtifact
from .core.settings import load_timeout_settings

CONVERT_TOOLS = ["tar", "gzip", "service", "pg_dump", "pg_dumpall", "psql", "pg_isready"]
SANITISE_TOOLS = ["tar", "gzip"]

USAGE_HINT = "for usage instructions, run this command again with -h"


class PipelineArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting with argparse's code 2."""

    def error(self, message: str) -> NoReturn:
        raise InvalidArgumentError(f"{message} ({USAGE_HINT})")


def _bool_arg(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got '{value}'")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-s", "--source-dir", help="Directory holding source archives")
    parser.add_argument("-f", "--source-prefix", help="Name prefix of the source archive")
    parser.add_argument("-e", "--export-dir", help="Directory the export is published to")
    parser.add_argument("-n", "--export-prefix", help="Export file name prefix")
    parser.add_argument("-o", "--owner", help="Owner of the published export")
    parser.add_argument("-g", "--group", help="Group of the published export")
    parser.add_argument("-m", "--mode", help="Octal permission bits of the published export")
    parser.add_argument(
        "-t",
        "--timestamp",
        type=_bool_arg,
        help="Append an ISO 8601 timestamp to the export name (true|false)",
    )
    parser.add_argument(
        "-x", "--new-password", help="Reset every role password to this value"
    )
    parser.add_argument(
        "--clear-expiry",
        action="store_const",
        const=True,
        help="Set VALID UNTIL 'infinity' on every reset role (default for convert)",
    )
    parser.add_argument(
        "--keep-expiry",
        dest="clear_expiry",
        action="store_const",
        const=False,
        help="Leave VALID UNTIL untouched (default for sanitise)",
    )
    parser.add_argument("--workspace-prefix", help="Path prefix for the scratch workspace")
    parser.add_argument("--config", help="YAML file with default settings")


def build_parser() -> argparse.ArgumentParser:
    parser = PipelineArgumentParser(
        prog="pgconvert",
        description="Convert PostgreSQL base backups into sanitised SQL export archives.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("--log-file", default=os.getenv("LOG_FILE"), help="Also log JSON to this file")
    parser.add_argument("--syslog", action="store_true", help="Also log to the local syslog")

    subparsers = parser.add_subparsers(dest="command", parser_class=PipelineArgumentParser)

    convert = subparsers.add_parser(
        "convert",
        help="Import the newest base backup into the intermediary server and export SQL",
    )
    _add_common_arguments(convert)
    convert.add_argument("-i", "--import-dir", help="Data directory of the intermediary server")
    convert.add_argument("-a", "--pg-host", help="Intermediary server host")
    convert.add_argument("-p", "--pg-port", type=int, help="Intermediary server port")
    convert.add_argument("-u", "--pg-user", help="Intermediary server super user")
    convert.add_argument("--service-name", help="Service name of the intermediary server")
    convert.add_argument(
        "-z", "--rules-file", help="File of 'database:statement;' data transforms"
    )
    convert.add_argument(
        "--no-data",
        dest="include_data",
        action="store_false",
        default=None,
        help="Dump schemas only",
    )

    sanitise = subparsers.add_parser(
        "sanitise", help="Reset role passwords inside the newest existing export archive"
    )
    _add_common_arguments(sanitise)
    sanitise.add_argument("--roles-file", help="Path of the role dump inside the archive")

    return parser


def _publish_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "export_dir": args.export_dir,
        "prefix": args.export_prefix,
        "owner": args.owner,
        "group": args.group,
        "mode": args.mode,
        "timestamp": args.timestamp,
    }


def convert_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Command line values for ConvertConfig (None means 'not given')."""
    return {
        "source_dir": args.source_dir,
        "source_prefix": args.source_prefix,
        "workspace_prefix": args.workspace_prefix,
        "include_data": args.include_data,
        "intermediary": {
            "host": args.pg_host,
            "port": args.pg_port,
            "user": args.pg_user,
            "data_dir": args.import_dir,
            "service_name": args.service_name,
        },
        "publish": _publish_overrides(args),
        "sanitise": {
            "new_password": args.new_password,
            "rules_file": args.rules_file,
            "clear_expiry": args.clear_expiry,
        },
    }


def sanitise_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Command line values for SanitiseConfig (None means 'not given')."""
    return {
        "source_dir": args.source_dir,
        "source_prefix": args.source_prefix,
        "workspace_prefix": args.workspace_prefix,
        "new_password": args.new_password,
        "clear_expiry": args.clear_expiry,
        "roles_file": args.roles_file,
        "publish": _publish_overrides(args),
    }


def create_pipeline(args: argparse.Namespace) -> ConversionPipeline | SanitisePipeline:
    """Validate configuration, check tools and build the requested pipeline."""
    try:
        settings = load_timeout_settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid timeout setting: {e}") from e
    if args.command == "convert":
        convert_config: ConvertConfig = build_config(ConvertConfig, args.config, convert_overrides(args))
        convert_config = convert_config.model_copy(
            update={"tools": convert_config.tools.resolve(CONVERT_TOOLS)}
        )
        return ConversionPipeline(convert_config, settings)

    sanitise_config: SanitiseConfig = build_config(SanitiseConfig, args.config, sanitise_overrides(args))
    sanitise_config = sanitise_config.model_copy(
        update={"tools": sanitise_config.tools.resolve(SANITISE_TOOLS)}
    )
    return SanitisePipeline(sanitise_config, settings)


async def run_pipeline(pipeline: ConversionPipeline | SanitisePipeline) -> PublishedArtifact:
    """Run ``pipeline``, turning SIGINT/SIGTERM into task cancellation.

    Cancellation unwinds through the workspace scope, so the workspace is
    removed and child processes are terminated before the process exits.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(pipeline.run())
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, task.cancel)
    try:
        return await task
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await pipeline.runner.cleanup_all()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    load_dotenv()

    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        if args.command is None:
            raise MissingArgumentError(f"a command is required: convert or sanitise ({USAGE_HINT})")
    except PgConvertError as e:
        print(f"pgconvert: {e}", file=sys.stderr)
        return e.exit_code

    setup_logging(log_level=args.log_level, log_file=args.log_file, use_syslog=args.syslog)
    logger = get_logger().bind(command=args.command)

    try:
        pipeline = create_pipeline(args)
        artifact = asyncio.run(run_pipeline(pipeline))
    except PgConvertError as e:
        logger.error("Run failed", error=str(e), error_type=type(e).__name__, exit_code=e.exit_code)
        print(f"pgconvert: error: {e}", file=sys.stderr)
        return e.exit_code
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.warning("Run interrupted")
        print("pgconvert: interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED

    logger.info("Export published", path=str(artifact.path), mode=f"{artifact.mode:o}")
    return EXIT_OK


def run() -> None:
    """Console script wrapper."""
    sys.exit(main())


if __name__ == "__main__":
    run()
