import os
import configparser
from pathlib import Path
from typing import Dict, Optional

import platformdirs

from .constants import (
    APP_NAME,
    AUTO_SYNC_INTERVAL_MINUTES,
    GOG_CLIENT_ID,
    GOG_REDIRECT_URI,
    MAX_RETRIES,
    PROCESS_CHECK_INTERVAL,
    REQUEST_TIMEOUT,
    SESSION_FALLBACK_TIMEOUT,
)
from .exceptions import ConfigurationError
from .logger import setup_logger
from .models import Platform

logger = setup_logger()


def get_config_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME, appauthor=False)) / "config.ini"


def get_data_dir() -> Path:
    """User data directory, or the executable directory in portable builds."""
    portable_dir = os.environ.get("PORTABLE_EXECUTABLE_DIR")
    if portable_dir:
        return Path(portable_dir) / "data"
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def is_portable() -> bool:
    return bool(os.environ.get("PORTABLE_EXECUTABLE_DIR") or os.environ.get("PLAYHUB_PORTABLE"))


DEFAULTS = {
    "Steam": {
        "api_key": "",
        "install_path": "",
    },
    "Epic": {
        "client_id": "",
        "client_secret": "",
        "redirect_uri": "",
        "deployment_id": "",
    },
    "GOG": {
        "client_id": GOG_CLIENT_ID,
        "redirect_uri": GOG_REDIRECT_URI,
    },
    "Sync": {
        "auto_sync_enabled": "true",
        "auto_sync_interval_minutes": str(AUTO_SYNC_INTERVAL_MINUTES),
        "request_timeout_seconds": str(int(REQUEST_TIMEOUT)),
        "max_retries": str(MAX_RETRIES),
    },
    "Sessions": {
        "poll_interval_seconds": str(int(PROCESS_CHECK_INTERVAL)),
        "fallback_timeout_seconds": str(int(SESSION_FALLBACK_TIMEOUT)),
    },
    "Presence": {
        "local_user_id": "local",
    },
    "Discord": {
        "enabled": "true",
        "client_id": "",
    },
}

# (section, key) -> environment variable that overrides it
ENV_OVERRIDES = {
    ("Steam", "api_key"): "STEAM_API_KEY",
    ("Epic", "client_id"): "EPIC_CLIENT_ID",
    ("Epic", "client_secret"): "EPIC_CLIENT_SECRET",
    ("Epic", "redirect_uri"): "EPIC_REDIRECT_URI",
    ("Epic", "deployment_id"): "EPIC_DEPLOYMENT_ID",
    ("Discord", "client_id"): "DISCORD_RICH_PRESENCE_CLIENT_ID",
}

REQUIRED_CREDENTIALS = {
    Platform.STEAM: (),
    Platform.EPIC: ("client_id", "client_secret", "redirect_uri"),
    Platform.GOG: ("client_id", "redirect_uri"),
}

SECTION_FOR_PLATFORM = {
    Platform.STEAM: "Steam",
    Platform.EPIC: "Epic",
    Platform.GOG: "GOG",
}


class ConfigManager(configparser.ConfigParser):
    """
    INI-backed settings. One instance is created at startup and handed to the
    services that need it.
    """

    def __init__(self, config_path: Optional[Path] = None):
        super().__init__(interpolation=None)
        self.logger = setup_logger()
        self.config_path = Path(config_path) if config_path else get_config_path()
        self.read(self.config_path, encoding="utf-8")
        if self._apply_defaults():
            self.save()

    def _apply_defaults(self) -> bool:
        changed = False
        for section, values in DEFAULTS.items():
            if not self.has_section(section):
                self.add_section(section)
                changed = True
            for key, value in values.items():
                if not self.has_option(section, key):
                    self.set(section, key, value)
                    changed = True
        return changed

    def save(self):
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as configfile:
                self.write(configfile)
        except OSError as e:
            self.logger.error(f"Failed to write config {self.config_path}: {e}")

    def get_value(self, section: str, key: str, fallback: str = "") -> str:
        env_name = ENV_OVERRIDES.get((section, key))
        if env_name and os.environ.get(env_name):
            return os.environ[env_name]
        return self.get(section, key, fallback=fallback)

    def get_int(self, section: str, key: str, fallback: int = 0) -> int:
        try:
            return int(self.get_value(section, key, str(fallback)))
        except ValueError:
            self.logger.warning(f"Invalid integer for [{section}] {key}, using {fallback}")
            return fallback

    def get_float(self, section: str, key: str, fallback: float = 0.0) -> float:
        try:
            return float(self.get_value(section, key, str(fallback)))
        except ValueError:
            self.logger.warning(f"Invalid number for [{section}] {key}, using {fallback}")
            return fallback

    def get_bool(self, section: str, key: str, fallback: bool = False) -> bool:
        value = self.get_value(section, key, "").strip().lower()
        if not value:
            return fallback
        return value in ("1", "true", "yes", "on")

    def set_value(self, section: str, key: str, value: str):
        self.logger.debug(f"Updating [{section}] {key}")
        if not self.has_section(section):
            self.add_section(section)
        self.set(section, key, value)
        self.save()

    def get_provider_credentials(self, platform: Platform) -> Dict[str, str]:
        """
        Credentials for a provider's auth flow.

        Raises:
            ConfigurationError: if any required value is empty
        """
        section = SECTION_FOR_PLATFORM[platform]
        credentials = {key: self.get_value(section, key) for key in DEFAULTS[section]}
        missing = [key for key in REQUIRED_CREDENTIALS[platform] if not credentials.get(key)]
        if missing:
            raise ConfigurationError(f"{section} is not configured (missing {', '.join(missing)})")
        return credentials

    # ----- typed shortcuts -----

    def get_request_timeout(self) -> float:
        return self.get_float("Sync", "request_timeout_seconds", REQUEST_TIMEOUT)

    def get_max_retries(self) -> int:
        return self.get_int("Sync", "max_retries", MAX_RETRIES)

    def get_auto_sync_enabled(self) -> bool:
        return self.get_bool("Sync", "auto_sync_enabled", True)

    def get_auto_sync_interval(self) -> float:
        """Auto-sync interval in seconds"""
        return self.get_int("Sync", "auto_sync_interval_minutes", AUTO_SYNC_INTERVAL_MINUTES) * 60.0

    def get_poll_interval(self) -> float:
        return self.get_float("Sessions", "poll_interval_seconds", PROCESS_CHECK_INTERVAL)

    def get_fallback_timeout(self) -> float:
        return self.get_float("Sessions", "fallback_timeout_seconds", SESSION_FALLBACK_TIMEOUT)

    def get_steam_install_path(self) -> str:
        """User supplied Steam root, checked before the platform defaults"""
        return self.get_value("Steam", "install_path")

    def get_local_user_id(self) -> str:
        return self.get_value("Presence", "local_user_id", "local") or "local"

    def get_discord_presence_enabled(self) -> bool:
        return self.get_bool("Discord", "enabled", True)

    def set_discord_presence_enabled(self, enabled: bool):
        self.set_value("Discord", "enabled", "true" if enabled else "false")

    def get_discord_client_id(self) -> str:
        return self.get_value("Discord", "client_id")
