"""
Tests for client configuration loading and validation.
"""

import pytest

from session_client.config import ClientConfiguration, ENV_MAPPINGS
from session_shared.exceptions import ConfigurationError
from session_shared.models import GrantType


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ENV_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "client.conf"


class TestClientConfiguration:
    """Test configuration sources and their priority."""

    def test_defaults(self, config_path):
        config = ClientConfiguration(str(config_path))

        assert config.get_interval_ms() == 60_000
        assert config.get_countdown_ms() == 1_000
        assert config.is_auto_start_enabled()
        assert config.get_token_tail_length() == 30
        assert config.get_domain() is None
        assert config.get_storage_namespace() == "default"
        assert config.validate() == []

    def test_file_values(self, config_path):
        config_path.write_text(
            "[auth]\n"
            "domain = https://example.kinde.com\n"
            "[revalidation]\n"
            "interval_ms = 5000\n"
            "auto_start = false\n"
        )

        config = ClientConfiguration(str(config_path))

        assert config.get_domain() == "https://example.kinde.com"
        assert config.get_interval_ms() == 5000
        assert config.is_auto_start_enabled() is False
        assert config.get_countdown_ms() == 1_000

    def test_environment_overrides_file(self, config_path, monkeypatch):
        config_path.write_text("[revalidation]\ninterval_ms = 5000\n")
        monkeypatch.setenv("SESSION_SYNC_INTERVAL_MS", "15000")
        monkeypatch.setenv("SESSION_SYNC_USE_KEYRING", "false")

        config = ClientConfiguration(str(config_path))

        assert config.get_interval_ms() == 15000
        assert config.use_keyring() is False

    def test_environment_can_be_ignored(self, config_path, monkeypatch):
        monkeypatch.setenv("SESSION_SYNC_INTERVAL_MS", "15000")

        config = ClientConfiguration(str(config_path), load_environment=False)

        assert config.get_interval_ms() == 60_000

    def test_override_has_highest_priority(self, config_path, monkeypatch):
        monkeypatch.setenv("SESSION_SYNC_DOMAIN", "https://env.example.com")
        config = ClientConfiguration(str(config_path))

        config.set_override("auth.domain", "https://cli.example.com")

        assert config.get_domain() == "https://cli.example.com"

    def test_save_and_reload(self, config_path):
        config = ClientConfiguration(str(config_path))
        config.set_config("revalidation.interval_ms", 30_000)
        config.set_config("auth.domain", "https://example.kinde.com")
        config.save_configuration()

        reloaded = ClientConfiguration(str(config_path))

        assert reloaded.get_interval_ms() == 30_000
        assert reloaded.get_domain() == "https://example.kinde.com"

    def test_reload_configuration(self, config_path):
        config = ClientConfiguration(str(config_path))
        config_path.write_text("[logging]\nlevel = DEBUG\n")

        config.reload_configuration()

        assert config.get_log_level() == "DEBUG"

    def test_validation_errors(self, config_path):
        config_path.write_text(
            "[auth]\n"
            "domain = not-a-url\n"
            "[revalidation]\n"
            "interval_ms = 0\n"
            "[logging]\n"
            "format = xml\n"
        )

        errors = ClientConfiguration(str(config_path)).validate()

        assert len(errors) == 3
        assert any("interval_ms" in error for error in errors)
        assert any("auth.domain" in error for error in errors)
        assert any("logging.format" in error for error in errors)

    def test_grant_type(self, config_path, monkeypatch):
        assert ClientConfiguration(str(config_path)).get_grant_type() == GrantType.PKCE

        monkeypatch.setenv("SESSION_SYNC_GRANT_TYPE", "NONE")

        assert ClientConfiguration(str(config_path)).get_grant_type() == GrantType.NONE

    def test_unknown_grant_type(self, config_path):
        config_path.write_text("[auth]\ngrant_type = implicit\n")
        config = ClientConfiguration(str(config_path))

        with pytest.raises(ConfigurationError) as exc_info:
            config.get_grant_type()

        assert exc_info.value.context['config_key'] == 'auth.grant_type'
        assert config.validate() == ['auth.grant_type is not supported: implicit']

    def test_get_all_config_is_a_copy(self, config_path):
        config = ClientConfiguration(str(config_path))

        snapshot = config.get_all_config()
        snapshot['revalidation']['interval_ms'] = 1

        assert config.get_interval_ms() == 60_000
