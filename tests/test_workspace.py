"""Tests for workspace allocation, scoping and deletion safety."""

import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from pgconvert.core.exceptions import WorkspaceError
from pgconvert.core.safety import DeletionGuard, UnsafePathError
from pgconvert.core.workspace import Workspace, WorkspaceManager


@pytest.fixture
def manager(tmp_path):
    """Workspace manager rooted in a per-test directory."""
    return WorkspaceManager(str(tmp_path / ".wspace_"))


class TestWorkspaceManager:
    """Workspace creation and removal."""

    def test_create_uses_prefix_and_private_mode(self, manager, tmp_path):
        workspace = manager.create()

        assert workspace.path.is_dir()
        assert workspace.path.parent == tmp_path
        assert workspace.path.name.startswith(".wspace_")
        assert len(workspace.path.name) == len(".wspace_") + 32
        assert stat.S_IMODE(workspace.path.stat().st_mode) == 0o700

    def test_paths_are_unique(self, manager):
        paths = {manager.create().path for _ in range(50)}

        assert len(paths) == 50

    def test_root_is_prefix_parent(self, manager, tmp_path):
        assert manager.root == tmp_path

    def test_create_in_missing_directory_fails(self, tmp_path):
        manager = WorkspaceManager(str(tmp_path / "missing" / ".wspace_"))

        with pytest.raises(WorkspaceError) as exc_info:
            manager.create()
        assert exc_info.value.exit_code == 5

    def test_destroy_removes_tree(self, manager):
        workspace = manager.create()
        (workspace / "unit").mkdir()
        (workspace / "unit" / "schema.sql").write_text("CREATE TABLE t();")

        manager.destroy(workspace)

        assert not workspace.path.exists()

    def test_destroy_refuses_path_outside_prefix(self, manager, tmp_path):
        outsider = tmp_path / "precious"
        outsider.mkdir()

        with pytest.raises(WorkspaceError):
            manager.destroy(Workspace(path=outsider))
        assert outsider.exists()

    def test_destroy_missing_workspace_only_warns(self, manager):
        workspace = manager.create()
        workspace.path.rmdir()

        manager.destroy(workspace)


class TestWorkspaceScope:
    """The scope removes the workspace exactly once on every exit path."""

    def test_scope_destroys_on_success(self, manager):
        with patch.object(manager, "destroy", wraps=manager.destroy) as destroy:
            with manager.scope() as workspace:
                (workspace / "roles.sql").write_text("")

        destroy.assert_called_once_with(workspace)
        assert not workspace.path.exists()

    def test_scope_destroys_on_error(self, manager):
        with patch.object(manager, "destroy", wraps=manager.destroy) as destroy:
            with pytest.raises(RuntimeError, match="boom"):
                with manager.scope() as workspace:
                    raise RuntimeError("boom")

        destroy.assert_called_once_with(workspace)
        assert not workspace.path.exists()

    def test_scope_keeps_original_error_when_cleanup_fails(self, manager):
        with patch.object(manager, "destroy", side_effect=WorkspaceError("cannot remove")) as destroy:
            with pytest.raises(RuntimeError, match="boom"):
                with manager.scope() as workspace:
                    raise RuntimeError("boom")

        destroy.assert_called_once()
        manager.guard.remove_tree(workspace.path, "test cleanup", required_prefix=manager.prefix)

    def test_scope_cleanup_failure_after_success_raises(self, manager):
        with patch.object(manager, "destroy", side_effect=WorkspaceError("cannot remove")):
            with pytest.raises(WorkspaceError):
                with manager.scope():
                    pass


class TestDeletionGuard:
    """Validation of recursive deletions."""

    @pytest.fixture
    def guard(self):
        return DeletionGuard()

    @pytest.mark.parametrize("path", ["/", "/tmp", "/var/lib/postgresql", "/etc"])
    def test_protected_paths_rejected(self, guard, path):
        is_safe, reason = guard.validate_deletion_path(path)

        assert not is_safe
        assert path in reason or "root" in reason

    def test_parent_traversal_rejected(self, guard, tmp_path):
        is_safe, reason = guard.validate_deletion_path(f"{tmp_path}/a/../b")

        assert not is_safe
        assert "traversal" in reason

    def test_prefix_itself_rejected(self, guard, tmp_path):
        prefix = str(tmp_path / ".wspace_")
        Path(prefix).mkdir()

        is_safe, _ = guard.validate_deletion_path(prefix, required_prefix=prefix)

        assert not is_safe

    def test_remove_tree(self, guard, tmp_path):
        target = tmp_path / "scratch" / "dir"
        target.mkdir(parents=True)

        guard.remove_tree(target, "test removal")

        assert not target.exists()
        assert target.parent.exists()

    def test_remove_tree_blocked_raises(self, guard):
        with pytest.raises(UnsafePathError, match="SAFETY BLOCK"):
            guard.remove_tree("/tmp", "never")
        assert Path("/tmp").is_dir()
