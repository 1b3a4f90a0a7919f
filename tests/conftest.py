"""Shared fixtures for pgconvert tests."""

import grp
import os
import pwd
from collections.abc import Callable
from pathlib import Path

import pytest

from pgconvert.core.config_loader import (
    ConvertConfig,
    IntermediaryConfig,
    PublishConfig,
    SanitiseConfig,
    ToolPaths,
)
from pgconvert.core.exceptions import CommandError
from pgconvert.core.settings import PipelineTimeoutSettings
from pgconvert.core.subprocess_manager import SubprocessResult


class FakeRunner:
    """Stand-in for SubprocessManager that records every call.

    ``responder`` decides the result of ``run_command`` calls; it may return
    a SubprocessResult or raise. ``dumps`` maps a program name to the bytes
    ``stream_to_file`` writes (through the requested transform).
    ``pipeline_hook`` runs for every ``run_pipeline`` call.
    """

    def __init__(self):
        self.calls: list[tuple[str, list]] = []
        self.responder: Callable[[list[str]], SubprocessResult] = self._succeed
        self.dumps: dict[str, bytes] = {}
        self.fail_dump: str | None = None
        self.pipeline_hook: Callable[..., None] | None = None
        self.cleaned_up = False

    @staticmethod
    def _succeed(cmd: list[str]) -> SubprocessResult:
        return SubprocessResult(0, "", "", cmd)

    def commands(self, kind: str | None = None) -> list:
        return [cmd for call_kind, cmd in self.calls if kind is None or call_kind == kind]

    async def run_command(self, cmd, *, timeout=None, check=True, **kwargs):
        self.calls.append(("run", list(cmd)))
        result = self.responder(list(cmd))
        if check:
            result.check_returncode()
        return result

    async def run_pipeline(self, stages, *, stdin_path=None, stdout_path=None, **kwargs):
        self.calls.append(("pipeline", [list(stage) for stage in stages]))
        if self.pipeline_hook is not None:
            self.pipeline_hook(stages, stdin_path=stdin_path, stdout_path=stdout_path)
        return [SubprocessResult(0, "", "", list(stage)) for stage in stages]

    async def stream_to_file(self, cmd, output_path, *, transform=None, mode=0o600, **kwargs):
        self.calls.append(("stream", list(cmd)))
        program = Path(cmd[0]).name
        if self.fail_dump is not None and self.fail_dump in cmd:
            raise CommandError(f"{program} failed with exit code 1: connection refused")
        content = self.dumps.get(program, b"")
        if transform is not None:
            line_filter = transform()
            content = line_filter.feed(content) + line_filter.flush()
        fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        return SubprocessResult(0, "", "", list(cmd))

    async def cleanup_all(self):
        self.cleaned_up = True


@pytest.fixture
def fake_runner():
    """Recording runner with every command succeeding."""
    return FakeRunner()


@pytest.fixture
def current_user() -> str:
    return pwd.getpwuid(os.getuid()).pw_name


@pytest.fixture
def current_group() -> str:
    return grp.getgrgid(os.getgid()).gr_name


@pytest.fixture
def tools() -> ToolPaths:
    return ToolPaths()


@pytest.fixture
def fast_settings() -> PipelineTimeoutSettings:
    """Settings with polling delays short enough for tests."""
    return PipelineTimeoutSettings(
        command_timeout=10,
        service_timeout=10,
        extract_timeout=30,
        dump_timeout=30,
        archive_timeout=30,
        poll_interval=0.0,
        poll_max_interval=0.0,
        poll_backoff=1.0,
        max_polls=3,
    )


@pytest.fixture
def layout(tmp_path: Path) -> dict[str, Path]:
    """Source, export, workspace and data directories on one filesystem."""
    paths = {
        "source": tmp_path / "source",
        "export": tmp_path / "export",
        "scratch": tmp_path / "scratch",
        "pgdata": tmp_path / "pgdata",
    }
    for name in ("source", "export", "scratch"):
        paths[name].mkdir()
    return paths


@pytest.fixture
def intermediary_config(layout, current_user, current_group) -> IntermediaryConfig:
    return IntermediaryConfig(
        user="postgres",
        data_dir=layout["pgdata"] / "main",
        owner=current_user,
        group=current_group,
    )


@pytest.fixture
def publish_config(layout, current_user, current_group) -> PublishConfig:
    return PublishConfig(
        export_dir=layout["export"],
        prefix="nightly",
        owner=current_user,
        group=current_group,
        mode="0640",
    )


@pytest.fixture
def convert_config(layout, intermediary_config, publish_config) -> ConvertConfig:
    return ConvertConfig(
        source_dir=layout["source"],
        source_prefix="base_",
        intermediary=intermediary_config,
        publish=publish_config,
        workspace_prefix=str(layout["scratch"] / ".wspace_"),
    )


@pytest.fixture
def sanitise_config(layout, publish_config) -> SanitiseConfig:
    return SanitiseConfig(
        source_dir=layout["source"],
        source_prefix="nightly",
        publish=publish_config.model_copy(update={"prefix": "nightly-clean"}),
        new_password="s3cret",
        workspace_prefix=str(layout["scratch"] / ".sanitise_"),
    )


ROLES_DUMP = (
    "--\n"
    "-- PostgreSQL database cluster dump\n"
    "--\n"
    "\n"
    'DROP ROLE IF EXISTS "alice";\n'
    'CREATE ROLE "alice";\n'
    'ALTER ROLE "alice" WITH NOSUPERUSER INHERIT NOCREATEROLE NOCREATEDB LOGIN '
    "NOREPLICATION NOBYPASSRLS PASSWORD 'md5aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa';\n"
    'CREATE ROLE "bob";\n'
    'ALTER ROLE "bob" WITH NOSUPERUSER INHERIT NOCREATEROLE NOCREATEDB LOGIN '
    "NOREPLICATION NOBYPASSRLS PASSWORD 'md5bbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb' "
    "VALID UNTIL '2020-01-01 00:00:00+00';\n"
    'GRANT "alice" TO "bob";\n'
)


@pytest.fixture
def roles_dump() -> str:
    """Role dump as written by ``pg_dumpall -g --quote-all-identifiers``."""
    return ROLES_DUMP
