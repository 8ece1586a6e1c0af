"""Tests for configuration loading and path resolution."""

from pathlib import Path

import pytest

from roo_task_man.config import (
    DEFAULT_PLUGIN_ID,
    Config,
    ConfigError,
    display_editor_name,
    map_editor_channel,
)


class TestLoad:
    """Tests for Config.load."""

    def test_missing_file_uses_defaults(self, tmp_path: Path):
        config = Config.load(tmp_path / "absent.yaml")
        assert config.plugin_id == DEFAULT_PLUGIN_ID
        assert config.code_channel == "Code"
        assert config.debug is False

    def test_reads_yaml_fields(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text(
            "plugin_id: my.plugin\n"
            "code_channel: cursor\n"
            "state_dir: /tmp/state\n"
            "debug: true\n"
            "lock_timeout_seconds: 2.5\n"
        )
        config = Config.load(path)
        assert config.plugin_id == "my.plugin"
        assert config.editor_name == "Cursor"
        assert config.state_path == Path("/tmp/state")
        assert config.debug is True
        assert config.lock_timeout_seconds == 2.5

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch):
        path = tmp_path / "c.yaml"
        path.write_text("plugin_id: from.file\ndebug: false\n")
        monkeypatch.setenv("RTM_PLUGIN_ID", "from.env")
        monkeypatch.setenv("RTM_DEBUG", "1")
        config = Config.load(path)
        assert config.plugin_id == "from.env"
        assert config.debug is True

    def test_unknown_key_warns(self, tmp_path: Path, capsys):
        path = tmp_path / "c.yaml"
        path.write_text("mystery: 1\n")
        Config.load(path)
        assert "Unknown configuration field 'mystery'" in capsys.readouterr().err

    def test_wrong_type_raises(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("debug: sometimes\n")
        with pytest.raises(ConfigError):
            Config.load(path)

    def test_non_mapping_raises(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            Config.load(path)


class TestValidate:
    """Tests for Config.validate."""

    def test_valid_file(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("plugin_id: x\n")
        assert Config.validate(path) == (True, [], [])

    def test_errors_and_warnings(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("plugin_id: 3\nextra: 1\nlock_timeout_seconds: -1\n")
        is_valid, errors, warnings = Config.validate(path)
        assert not is_valid
        assert "'plugin_id' must be a string" in errors
        assert "'lock_timeout_seconds' must be non-negative" in errors
        assert warnings == ["Unknown configuration field: 'extra'"]

    def test_custom_channel_requires_data_dir(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("code_channel: custom\n")
        is_valid, errors, _ = Config.validate(path)
        assert not is_valid
        assert errors == ["'code_channel: custom' requires 'data_dir'"]

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("a: [unclosed\n")
        is_valid, errors, _ = Config.validate(path)
        assert not is_valid
        assert errors[0].startswith("Invalid YAML syntax")


class TestPaths:
    """Tests for editor channel mapping and derived paths."""

    @pytest.mark.parametrize("channel,expected", [
        ("Code", ("Code", False)),
        ("stable", ("Code", False)),
        ("Insiders", ("Code - Insiders", False)),
        ("code_insiders", ("Code - Insiders", False)),
        ("codium", ("VSCodium", False)),
        ("Windsurf", ("Windsurf", False)),
        ("Custom", ("", True)),
        ("My Fork", ("My Fork", False)),
        ("", ("Code", False)),
    ])
    def test_map_editor_channel(self, channel, expected):
        assert map_editor_channel(channel) == expected

    def test_display_editor_name_for_custom(self):
        assert display_editor_name("Custom") == "Custom"
        assert display_editor_name("") == "Code"

    def test_storage_root_on_linux(self, monkeypatch, tmp_path: Path):
        monkeypatch.setattr("roo_task_man.config.sys.platform", "linux")
        monkeypatch.setenv("HOME", str(tmp_path))
        config = Config(code_channel="vscodium")
        assert config.storage_root == tmp_path / ".config" / "VSCodium" / "User" / "globalStorage" / DEFAULT_PLUGIN_ID
        assert config.state_path == tmp_path / ".config" / "VSCodium" / "User" / "globalStorage"

    def test_data_dir_overrides_storage_root(self, tmp_path: Path):
        config = Config(data_dir=str(tmp_path), code_channel="custom")
        assert config.storage_root == tmp_path

    def test_custom_without_data_dir_raises(self):
        with pytest.raises(ConfigError):
            Config(code_channel="custom").storage_root
