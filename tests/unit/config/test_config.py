"""Tests for configuration loading."""

from __future__ import annotations

import pytest
import toml

from tordirect.config import config as config_module
from tordirect.config.config import ConfigManager, get_config, init_config
from tordirect.models import LogLevel, SourceConfig
from tordirect.session.source import create_source, load_source_factory
from tordirect.sources.memory import MemoryContentSource
from tordirect.utils.exceptions import ConfigurationError

pytestmark = [pytest.mark.unit, pytest.mark.config]

ENV_VARS = [
    "PORT",
    "DOWNLOAD_PATH",
    *config_module.ENV_MAPPINGS.keys(),
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and config files."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module.Path, "home", lambda: tmp_path / "home")


class TestConfigManager:
    """Test ConfigManager layering."""

    def test_defaults(self):
        cfg = ConfigManager().config
        assert cfg.gateway.port == 3000
        assert cfg.storage.root == "./downloads"
        assert cfg.storage.log_file_name == ".saved_torrents.txt"
        assert cfg.broadcast.throttle_window == 0.5

    def test_legacy_environment(self, monkeypatch):
        """Test PORT and DOWNLOAD_PATH are honored."""
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("DOWNLOAD_PATH", "/srv/media")
        cfg = ConfigManager().config
        assert cfg.gateway.port == 8080
        assert cfg.storage.root == "/srv/media"

    def test_prefixed_environment_wins(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("TORDIRECT_PORT", "9090")
        monkeypatch.setenv("TORDIRECT_STRUCTURED_LOGGING", "true")
        monkeypatch.setenv("TORDIRECT_LOG_LEVEL", "DEBUG")
        cfg = ConfigManager().config
        assert cfg.gateway.port == 9090
        assert cfg.observability.structured_logging is True
        assert cfg.observability.log_level == LogLevel.DEBUG

    def test_toml_file_then_env_then_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.toml"
        path.write_text(
            toml.dumps(
                {
                    "gateway": {"port": 4000, "host": "127.0.0.1"},
                    "broadcast": {"throttle_window": 1.5},
                }
            ),
            encoding="utf-8",
        )
        monkeypatch.setenv("TORDIRECT_HOST", "::1")
        cm = ConfigManager(path, overrides={"gateway": {"port": 5000}})
        assert cm.config_file == path
        assert cm.config.gateway.port == 5000
        assert cm.config.gateway.host == "::1"
        assert cm.config.broadcast.throttle_window == 1.5

    def test_discovers_file_in_cwd(self, tmp_path):
        (tmp_path / "tordirect.toml").write_text(
            "[storage]\nroot = \"/data\"\n", encoding="utf-8"
        )
        cm = ConfigManager()
        assert cm.config_file == tmp_path / "tordirect.toml"
        assert cm.config.storage.root == "/data"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(tmp_path / "absent.toml")

    def test_unparsable_file(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[gateway\nport = ", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            ConfigManager(path)

    @pytest.mark.parametrize(
        ("env", "value"),
        [
            ("PORT", "not-a-number"),
            ("TORDIRECT_PORT", "70000"),
            ("TORDIRECT_LOG_FILE_NAME", "nested/log.txt"),
            ("TORDIRECT_SOURCE_FACTORY", "no-colon"),
        ],
    )
    def test_invalid_values(self, monkeypatch, env, value):
        monkeypatch.setenv(env, value)
        with pytest.raises(ConfigurationError):
            ConfigManager()

    def test_export_round_trips(self):
        cm = ConfigManager(overrides={"gateway": {"port": 1234}})
        data = toml.loads(cm.export())
        assert data["gateway"]["port"] == 1234
        assert "log_file" not in data["observability"]


def test_init_config_sets_global(tmp_path):
    cm = init_config(overrides={"gateway": {"port": 3333}}, configure_logging=False)
    assert get_config() is cm.config
    assert get_config().gateway.port == 3333


class TestSourceFactory:
    """Test content source selection."""

    def test_default_factory(self):
        source = create_source(SourceConfig(options={"chunk_size": 10}))
        assert isinstance(source, MemoryContentSource)
        assert source.chunk_size == 10

    def test_missing_module(self):
        with pytest.raises(ConfigurationError):
            load_source_factory("tordirect.sources.nothing_here:Source")

    def test_missing_attribute(self):
        with pytest.raises(ConfigurationError):
            load_source_factory("tordirect.sources.memory:Missing")

    def test_factory_must_build_a_source(self):
        with pytest.raises(ConfigurationError):
            create_source(SourceConfig(factory="builtins:dict"))
