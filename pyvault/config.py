"""Configuration management for pyvault.

Values are resolved in this order: environment variables, then the
dotenv style config file (``~/.config/pyvault/config``), then built-in
defaults.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values, set_key

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:4502"
DEFAULT_USER = "admin"
DEFAULT_PASSWORD = "admin"

# Config file key -> environment variable
CONFIG_KEYS = {
    "server_url": "PYVAULT_SERVER_URL",
    "user": "PYVAULT_USER",
    "password": "PYVAULT_PASSWORD",
    "accept_self_signed": "PYVAULT_ACCEPT_SELF_SIGNED",
    "auto_sync": "PYVAULT_AUTO_SYNC",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_config_dir() -> Path:
    """Return the config directory, honouring XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "pyvault"
    return Path.home() / ".config" / "pyvault"


def _parse_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES


class Config:
    """Preferences provider for the sync engine and the CLI."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_path: Optional path to the config file
                (defaults to ``get_config_dir() / "config"``)
        """
        self._config_path = config_path

    def get_config_path(self) -> Path:
        """Get the path of the config file."""
        if self._config_path is not None:
            return self._config_path
        return get_config_dir() / "config"

    def _read_file(self) -> dict[str, str]:
        """Read the ``KEY=VALUE`` (dotenv) config file."""
        path = self.get_config_path()
        values: dict[str, str] = {}
        if not path.is_file():
            return values
        try:
            raw = dotenv_values(path, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to read config file %s: %s", path, e)
            return values
        for key, value in raw.items():
            if key is None or value is None:
                continue
            values[key.lower()] = value
        return values

    def _get(self, key: str) -> Optional[str]:
        env_value = os.environ.get(CONFIG_KEYS[key])
        if env_value:
            return env_value
        return self._read_file().get(key)

    @property
    def server_url(self) -> str:
        return self._get("server_url") or DEFAULT_SERVER_URL

    @property
    def user(self) -> str:
        return self._get("user") or DEFAULT_USER

    @property
    def password(self) -> str:
        return self._get("password") or DEFAULT_PASSWORD

    @property
    def accept_self_signed(self) -> bool:
        return _parse_bool(self._get("accept_self_signed"))

    def get_remote_url(self) -> str:
        """Get the server URL without trailing slashes."""
        return self.server_url.rstrip("/")

    def get_credentials(self) -> tuple[str, str]:
        """Get the (user, password) pair used for basic authentication."""
        return self.user, self.password

    def get_auto_sync_enabled(self) -> bool:
        """Check whether changed files should be pushed automatically."""
        return _parse_bool(self._get("auto_sync"))

    def is_configured(self) -> bool:
        """Check whether a server URL was set by the user."""
        return bool(self._get("server_url"))

    def save(self, **values: object) -> None:
        """Persist values to the config file, keeping existing keys.

        Args:
            **values: Keys from ``CONFIG_KEYS`` and their new values

        Raises:
            ValueError: If an unknown key is given
        """
        unknown = set(values) - set(CONFIG_KEYS)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        path = self.get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        # The file holds a password
        path.touch(mode=0o600, exist_ok=True)
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            set_key(path, key, str(value), encoding="utf-8")
        path.chmod(0o600)
        logger.debug("Saved configuration to %s", path)


config = Config()
