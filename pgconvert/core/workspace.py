"""Per-run scratch workspaces."""

import os
import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

from ..constants import DEFAULT_WORKSPACE_PREFIX, WORKSPACE_MODE, WORKSPACE_TOKEN_BYTES
from .exceptions import WorkspaceError
from .safety import DeletionGuard, UnsafePathError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Workspace:
    """A private scratch directory owned by exactly one pipeline run."""

    path: Path

    def __truediv__(self, other: str) -> Path:
        return self.path / other

    def __str__(self) -> str:
        return str(self.path)


class WorkspaceManager:
    """Allocates and removes owner-only scratch directories.

    Paths are ``<prefix><random hex>``; the token carries
    ``WORKSPACE_TOKEN_BYTES * 8`` bits so overlapping scheduled runs never
    collide, and ``mkdir`` refuses an existing path outright.
    """

    def __init__(self, prefix: str = DEFAULT_WORKSPACE_PREFIX, guard: DeletionGuard | None = None):
        self.prefix = prefix
        self.guard = guard or DeletionGuard()
        self.logger = logger.bind(component="workspace")

    @property
    def root(self) -> Path:
        """Directory the workspaces are created in."""
        return Path(self.prefix).parent

    def create(self) -> Workspace:
        path = Path(f"{self.prefix}{secrets.token_hex(WORKSPACE_TOKEN_BYTES)}")
        try:
            os.mkdir(path, WORKSPACE_MODE)
            # mkdir honours the umask; force the exact mode
            os.chmod(path, WORKSPACE_MODE)
        except OSError as e:
            raise WorkspaceError(f"Could not create workspace '{path}': {e}") from e

        self.logger.info("Workspace created", path=str(path))
        return Workspace(path=path)

    def destroy(self, workspace: Workspace) -> None:
        try:
            self.guard.remove_tree(workspace.path, "Workspace cleanup", required_prefix=self.prefix)
        except FileNotFoundError:
            self.logger.warning("Workspace already removed", path=str(workspace.path))
        except (OSError, UnsafePathError) as e:
            raise WorkspaceError(f"Could not remove workspace '{workspace.path}': {e}") from e
        self.logger.info("Workspace removed", path=str(workspace.path))

    @contextmanager
    def scope(self) -> Iterator[Workspace]:
        """Yield a fresh workspace and destroy it exactly once on exit.

        If the body raised (including cancellation), a cleanup failure is
        logged and the original error propagates.
        """
        workspace = self.create()
        try:
            yield workspace
        except BaseException:
            try:
                self.destroy(workspace)
            except WorkspaceError as cleanup_error:
                self.logger.error(
                    "Workspace cleanup failed after error",
                    path=str(workspace.path),
                    error=str(cleanup_error),
                )
            raise
        else:
            self.destroy(workspace)
