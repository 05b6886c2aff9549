"""
Tests for settings loading.
"""

import pytest
from pydantic import ValidationError

from mailseal.common.config import (
    KeyServerSettings,
    LoggingSettings,
    SecuritySettings,
    Settings,
    get_settings,
    reload_settings,
)
from mailseal.common.exceptions import InvalidConfigError, MissingConfigError


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.security.password_cache is True
        assert settings.security.password_timeout == 30
        assert settings.keyserver.hkp_lookup is True
        assert settings.compose.large_message_threshold == 400000
        assert settings.crypto.default_key is None

    def test_hkp_url_is_normalized(self):
        settings = KeyServerSettings(hkp_base_url="https://keys.example.org:11371/")
        assert settings.hkp_base_url == "https://keys.example.org:11371"

    @pytest.mark.parametrize("url", ["keys.example.org", "ftp://keys.example.org", "https://"])
    def test_invalid_hkp_url(self, url):
        with pytest.raises(ValidationError):
            KeyServerSettings(hkp_base_url=url)

    def test_server_list_from_string(self):
        settings = KeyServerSettings(hkp_server_list="https://a.org, https://b.org")
        assert settings.hkp_server_list == ["https://a.org", "https://b.org"]
        assert KeyServerSettings(hkp_server_list="  ").hkp_server_list == []

    def test_log_level(self):
        assert LoggingSettings(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingSettings(level="chatty")

    def test_password_timeout_bounds(self):
        with pytest.raises(ValidationError):
            SecuritySettings(password_timeout=0)

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("MAILSEAL_SECURITY_PASSWORD_TIMEOUT", "5")
        monkeypatch.setenv("MAILSEAL_GENERAL_AUTO_SIGN_MSG", "true")

        settings = Settings()

        assert settings.security.password_timeout == 5
        assert settings.general.auto_sign_msg is True

    def test_bad_environment_value(self, monkeypatch):
        monkeypatch.setenv("MAILSEAL_LOG_LEVEL", "bogus")

        with pytest.raises(InvalidConfigError) as exc_info:
            get_settings()
        assert exc_info.value.config_key == "environment"


class TestTomlConfig:
    def test_from_toml(self, tmp_path):
        path = tmp_path / "mailseal.toml"
        path.write_text(
            "[app]\n"
            "debug = true\n"
            "[general]\n"
            "auto_add_primary = true\n"
            "[compose]\n"
            "attachment_concurrency = 8\n"
        )

        settings = Settings.from_toml(path)

        assert settings.debug is True
        assert settings.general.auto_add_primary is True
        assert settings.compose.attachment_concurrency == 8

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingConfigError):
            Settings.from_toml(tmp_path / "absent.toml")

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "broken.toml"
        path.write_text("[general\n")
        with pytest.raises(InvalidConfigError):
            Settings.from_toml(path)

    def test_invalid_section(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text('[keyserver]\nhkp_base_url = "not a url"\n')
        with pytest.raises(InvalidConfigError) as exc_info:
            Settings.from_toml(path)
        assert exc_info.value.config_key == "keyserver"

    def test_get_settings_uses_config_file(self, tmp_path, monkeypatch):
        path = tmp_path / "mailseal.toml"
        path.write_text("[security]\npassword_cache = false\n")
        monkeypatch.setenv("MAILSEAL_CONFIG_FILE", str(path))

        assert get_settings().security.password_cache is False
        assert get_settings() is get_settings()

        path.write_text("[security]\npassword_cache = true\n")
        assert reload_settings().security.password_cache is True
