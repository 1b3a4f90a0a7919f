"""Tests for configuration loading and validation."""

from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from pgconvert.core.config_loader import (
    ConvertConfig,
    PublishConfig,
    SanitiseConfig,
    ToolPaths,
    build_config,
    merge_overrides,
    read_config_file,
)
from pgconvert.core.exceptions import (
    ConfigurationError,
    MissingArgumentError,
    MissingDependencyError,
)
from pgconvert.core.settings import PipelineTimeoutSettings
from pgconvert.utils import export_filename, format_size, is_safe_unit_name

CONVERT_YAML = """
source_dir: /srv/backups
source_prefix: base_
intermediary:
  user: postgres
  data_dir: /var/lib/postgresql/15/main/
  port: 5433
publish:
  export_dir: /srv/exports
  prefix: nightly
  owner: backup
  group: backup
  mode: "0640"
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "pgconvert.yaml"
    path.write_text(CONVERT_YAML)
    return path


class TestBuildConfig:
    """YAML defaults merged with command line values."""

    def test_yaml_only(self, config_file):
        config = build_config(ConvertConfig, config_file, {})

        assert config.source_dir == Path("/srv/backups")
        assert config.intermediary.data_dir == Path("/var/lib/postgresql/15/main")
        assert config.intermediary.port == 5433
        assert config.publish.mode == 0o640
        assert config.include_data is True
        assert config.compression_level == 4
        assert config.sanitise.new_password is None
        assert config.sanitise.clear_expiry is True

    def test_overrides_win_and_none_is_ignored(self, config_file):
        overrides = {
            "source_prefix": "other_",
            "include_data": None,
            "intermediary": {"port": None, "host": "db.internal"},
            "publish": {"timestamp": True},
        }

        config = build_config(ConvertConfig, config_file, overrides)

        assert config.source_prefix == "other_"
        assert config.intermediary.port == 5433
        assert config.intermediary.host == "db.internal"
        assert config.intermediary.user == "postgres"
        assert config.publish.timestamp is True

    def test_missing_required_values(self):
        with pytest.raises(MissingArgumentError) as exc_info:
            build_config(ConvertConfig, None, {"source_dir": "/srv"})

        assert exc_info.value.exit_code == 2
        assert "source_prefix" in str(exc_info.value)

    def test_sanitise_requires_password(self, tmp_path):
        overrides = {
            "source_dir": str(tmp_path),
            "source_prefix": "nightly",
            "new_password": "",
            "publish": {
                "export_dir": str(tmp_path),
                "prefix": "clean",
                "owner": "backup",
                "group": "backup",
                "mode": "0600",
            },
        }

        with pytest.raises(MissingArgumentError, match="new_password"):
            build_config(SanitiseConfig, None, overrides)

    def test_sanitise_keeps_expiry_by_default(self, tmp_path):
        overrides = {
            "source_dir": str(tmp_path),
            "source_prefix": "nightly",
            "new_password": "pw",
            "publish": {
                "export_dir": str(tmp_path),
                "prefix": "clean",
                "owner": "backup",
                "group": "backup",
                "mode": "0600",
            },
        }

        assert build_config(SanitiseConfig, None, overrides).clear_expiry is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            build_config(ConvertConfig, tmp_path / "absent.yaml", {})

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            read_config_file(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert read_config_file(path) == {}


class TestPublishConfig:
    """Mode and prefix validation."""

    def _publish(self, **kwargs):
        values = {"export_dir": "/srv", "prefix": "nightly", "owner": "a", "group": "b", "mode": "0640"}
        values.update(kwargs)
        return PublishConfig(**values)

    @pytest.mark.parametrize("mode, expected", [("0640", 0o640), ("640", 0o640), ("2750", 0o2750), (0o600, 0o600)])
    def test_mode_parsing(self, mode, expected):
        assert self._publish(mode=mode).mode == expected

    @pytest.mark.parametrize("mode", ["rw-r-----", "0999", "17777", -1])
    def test_invalid_mode(self, mode):
        with pytest.raises(ValueError):
            self._publish(mode=mode)

    @pytest.mark.parametrize("prefix", ["", "a/b", ".."])
    def test_invalid_prefix(self, prefix):
        with pytest.raises(ValueError):
            self._publish(prefix=prefix)


class TestMergeOverrides:
    def test_nested_merge(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}

        merged = merge_overrides(base, {"a": {"c": 20, "e": None}, "f": {"g": None}})

        assert merged == {"a": {"b": 1, "c": 20}, "d": 3, "f": {}}
        assert base == {"a": {"b": 1, "c": 2}, "d": 3}


class TestToolPaths:
    """Dependency resolution."""

    def test_resolve_returns_absolute_paths(self):
        with patch("pgconvert.core.config_loader.shutil.which", side_effect=lambda name: f"/usr/bin/{name}"):
            tools = ToolPaths().resolve(["tar", "gzip"])

        assert tools.tar == "/usr/bin/tar"
        assert tools.gzip == "/usr/bin/gzip"
        assert tools.psql == "psql"

    def test_missing_tool(self):
        with patch("pgconvert.core.config_loader.shutil.which", return_value=None):
            with pytest.raises(MissingDependencyError, match='"pg_dump"') as exc_info:
                ToolPaths().resolve(["pg_dump"])

        assert exc_info.value.exit_code == 3


class TestTimeoutSettings:
    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("PGCONVERT_DUMP_TIMEOUT", "60")
        monkeypatch.setenv("PGCONVERT_MAX_POLLS", "10")

        settings = PipelineTimeoutSettings()

        assert settings.dump_timeout == 60
        assert settings.max_polls == 10
        assert settings.command_timeout == 120


class TestUtils:
    def test_export_filename(self):
        assert export_filename("nightly", False) == "nightly.tar.gz"
        assert (
            export_filename("nightly", True, datetime(2024, 1, 2, 3, 4, 5))
            == "nightly.2024-01-02T03-04-05.tar.gz"
        )

    @pytest.mark.parametrize(
        "name, safe",
        [("shop", True), ("my db", True), ("", False), ("..", False), ("-x", False), ("a/b", False)],
    )
    def test_is_safe_unit_name(self, name, safe):
        assert is_safe_unit_name(name) is safe

    def test_format_size(self):
        assert format_size(0) == "0 B"
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KB"
