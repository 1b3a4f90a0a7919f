"""Tests for source artifact discovery."""

import os

import pytest

from pgconvert.core.exceptions import SourceNotFoundError
from pgconvert.core.locator import find_latest


def _touch(path, mtime):
    path.write_bytes(b"backup")
    os.utime(path, (mtime, mtime))
    return path


class TestFindLatest:
    """Selection of the newest matching source file."""

    def test_picks_most_recent_modification(self, tmp_path):
        _touch(tmp_path / "base_monday.tar.gz", 1_000)
        _touch(tmp_path / "base_tuesday.tar.gz", 3_000)
        _touch(tmp_path / "base_wednesday.tar.gz", 2_000)

        artifact = find_latest(tmp_path, "base_")

        assert artifact.path == (tmp_path / "base_tuesday.tar.gz").absolute()
        assert artifact.mtime == 3_000
        assert artifact.prefix == "base_"
        assert artifact.size == len(b"backup")

    def test_equal_mtime_resolves_to_largest_name(self, tmp_path):
        _touch(tmp_path / "base_a.tar.gz", 5_000)
        _touch(tmp_path / "base_c.tar.gz", 5_000)
        _touch(tmp_path / "base_b.tar.gz", 5_000)

        for _ in range(3):
            assert find_latest(tmp_path, "base_").path.name == "base_c.tar.gz"

    def test_ignores_other_prefixes(self, tmp_path):
        _touch(tmp_path / "base_old.tar.gz", 1_000)
        _touch(tmp_path / "other_new.tar.gz", 9_000)

        assert find_latest(tmp_path, "base_").path.name == "base_old.tar.gz"

    def test_ignores_directories(self, tmp_path):
        _touch(tmp_path / "base_file.tar.gz", 1_000)
        newer_dir = tmp_path / "base_dir"
        newer_dir.mkdir()
        os.utime(newer_dir, (9_000, 9_000))

        assert find_latest(tmp_path, "base_").path.name == "base_file.tar.gz"

    def test_ignores_nested_files(self, tmp_path):
        _touch(tmp_path / "base_top.tar.gz", 1_000)
        nested = tmp_path / "archive"
        nested.mkdir()
        _touch(nested / "base_nested.tar.gz", 9_000)

        assert find_latest(tmp_path, "base_").path.name == "base_top.tar.gz"

    def test_no_match_raises(self, tmp_path):
        _touch(tmp_path / "unrelated.tar.gz", 1_000)

        with pytest.raises(SourceNotFoundError) as exc_info:
            find_latest(tmp_path, "base_")
        assert exc_info.value.exit_code == 4
        assert "base_" in str(exc_info.value)

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(SourceNotFoundError):
            find_latest(tmp_path / "missing", "base_")

    def test_modified_at_is_timezone_aware(self, tmp_path):
        _touch(tmp_path / "base_x.tar.gz", 0)

        artifact = find_latest(tmp_path, "base_")

        assert artifact.modified_at.tzinfo is not None
        assert artifact.modified_at.year == 1970
