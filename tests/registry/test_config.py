"""
Tests for registry configuration loading.
"""

import json
from pathlib import Path

import pytest

from cpuarch.registry.config import (
    BUNDLED_DATA_PATH,
    RegistryConfig,
    get_config,
    save_config,
)


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """Run from an empty directory with no user config and no overrides."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "config"))
    monkeypatch.delenv("CPUARCH_DATA_PATH", raising=False)
    monkeypatch.delenv("CPUARCH_EXTENSION_PATH", raising=False)
    return tmp_path


def _write(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


class TestRegistryConfig:
    """Tests for the RegistryConfig dataclass"""

    def test_defaults(self):
        config = RegistryConfig()
        assert config.data_path is None
        assert config.extension_path is None
        assert config.resolved_data_path == BUNDLED_DATA_PATH

    def test_strings_become_paths(self):
        config = RegistryConfig(data_path="/tmp/a.json", extension_path="/tmp/b.json")
        assert config.data_path == Path("/tmp/a.json")
        assert config.extension_path == Path("/tmp/b.json")
        assert config.resolved_data_path == Path("/tmp/a.json")

    def test_from_dict_ignores_unknown_keys(self):
        config = RegistryConfig.from_dict({"data_path": "x.json", "colour": "blue"})
        assert config.data_path == Path("x.json")

    def test_to_dict(self):
        config = RegistryConfig(data_path="/tmp/a.json")
        assert config.to_dict() == {"data_path": "/tmp/a.json", "extension_path": None}

    def test_bundled_data_exists(self):
        assert BUNDLED_DATA_PATH.is_file()


class TestGetConfig:
    """Tests for get_config() precedence"""

    def test_defaults(self, clean_env):
        config = get_config()
        assert config.data_path is None
        assert config.resolved_data_path == BUNDLED_DATA_PATH

    def test_project_config(self, clean_env):
        project = clean_env / "project"
        (project / "pyproject.toml").write_text("[project]\nname = 'demo'\n")
        _write(project / ".cpuarch" / "config.json", {"extension_path": "ext.json"})
        assert get_config().extension_path == Path("ext.json")

    def test_user_config_overrides_project(self, clean_env):
        project = clean_env / "project"
        (project / "pyproject.toml").write_text("")
        _write(project / ".cpuarch" / "config.json", {"data_path": "project.json"})
        _write(clean_env / "config" / "cpuarch" / "config.json", {"data_path": "user.json"})
        assert get_config().data_path == Path("user.json")

    def test_environment_overrides_files(self, clean_env, monkeypatch):
        _write(clean_env / "config" / "cpuarch" / "config.json", {
            "data_path": "user.json",
            "extension_path": "user_ext.json",
        })
        monkeypatch.setenv("CPUARCH_DATA_PATH", "env.json")
        config = get_config()
        assert config.data_path == Path("env.json")
        assert config.extension_path == Path("user_ext.json")

    def test_unreadable_config_is_ignored(self, clean_env, caplog):
        path = clean_env / "config" / "cpuarch" / "config.json"
        path.parent.mkdir(parents=True)
        path.write_text("{broken")
        with caplog.at_level("WARNING"):
            config = get_config()
        assert config.data_path is None
        assert "Ignoring unreadable config file" in caplog.text

    def test_non_object_config_is_ignored(self, clean_env):
        _write(clean_env / "config" / "cpuarch" / "config.json", ["data_path"])
        assert get_config().data_path is None


class TestSaveConfig:
    """Tests for save_config()"""

    def test_round_trip(self, clean_env):
        config = RegistryConfig(data_path="/srv/registry.json", extension_path="/srv/ext.json")
        path = save_config(config)
        assert path == clean_env / "config" / "cpuarch" / "config.json"
        assert get_config() == config

    def test_explicit_path(self, tmp_path):
        path = save_config(RegistryConfig(), tmp_path / "nested" / "config.json")
        assert json.loads(path.read_text()) == {"data_path": None, "extension_path": None}
