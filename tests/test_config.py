"""
Tests for the INI settings layer.
"""

import configparser

import pytest

from playhub.config import ConfigManager
from playhub.constants import GOG_CLIENT_ID
from playhub.exceptions import ConfigurationError
from playhub.models import Platform


class TestDefaults:
    def test_defaults_are_written(self, tmp_path):
        path = tmp_path / "nested" / "config.ini"
        ConfigManager(path)

        written = configparser.ConfigParser(interpolation=None)
        written.read(path, encoding="utf-8")
        assert written.get("Sync", "auto_sync_enabled") == "true"
        assert written.get("GOG", "client_id") == GOG_CLIENT_ID

    def test_existing_values_are_kept(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[Sync]\nauto_sync_interval_minutes = 15\n", encoding="utf-8")

        config = ConfigManager(path)

        assert config.get_auto_sync_interval() == 15 * 60
        assert config.get_max_retries() == 2

    def test_percent_signs_are_literal(self, tmp_path):
        config = ConfigManager(tmp_path / "config.ini")
        config.set_value("Steam", "install_path", "C:\\Games%20\\Steam")
        assert ConfigManager(tmp_path / "config.ini").get_steam_install_path() == "C:\\Games%20\\Steam"


class TestTypedValues:
    def test_invalid_numbers_fall_back(self, config):
        config.set_value("Sync", "max_retries", "many")
        config.set_value("Sessions", "poll_interval_seconds", "soon")
        assert config.get_max_retries() == 2
        assert config.get_poll_interval() == 10.0

    def test_booleans(self, config):
        config.set_value("Sync", "auto_sync_enabled", "off")
        assert not config.get_auto_sync_enabled()
        config.set_value("Sync", "auto_sync_enabled", "")
        assert config.get_auto_sync_enabled()

    def test_discord_switch_persists(self, config, tmp_path):
        config.set_discord_presence_enabled(False)
        assert not ConfigManager(tmp_path / "config.ini").get_discord_presence_enabled()

    def test_local_user_id_never_empty(self, config):
        config.set_value("Presence", "local_user_id", "")
        assert config.get_local_user_id() == "local"


class TestProviderCredentials:
    def test_environment_overrides_file(self, config, monkeypatch):
        config.set_value("Steam", "api_key", "from-file")
        monkeypatch.setenv("STEAM_API_KEY", "from-env")
        assert config.get_provider_credentials(Platform.STEAM)["api_key"] == "from-env"

    def test_missing_epic_settings(self, config, monkeypatch):
        for name in ("EPIC_CLIENT_ID", "EPIC_CLIENT_SECRET", "EPIC_REDIRECT_URI"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ConfigurationError) as excinfo:
            config.get_provider_credentials(Platform.EPIC)
        assert "client_id" in str(excinfo.value)

    def test_gog_works_out_of_the_box(self, config):
        assert config.get_provider_credentials(Platform.GOG)["client_id"] == GOG_CLIENT_ID
