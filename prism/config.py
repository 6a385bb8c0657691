"""
Prism - Configuration Manager
==============================
Handles loading of application configuration from two sources:

1. config.yaml  - Non-sensitive settings (panel URL, relay timings, etc.)
2. .env         - Sensitive secrets (panel API keys, session secret)

The manager merges both into a plain dict, and `Settings` freezes that dict
into an immutable object that is built once at startup and handed to every
collaborator that talks to the panel. Core code never reads os.environ.

Usage:
    config = ConfigManager(project_dir="/path/to/prism")
    settings = Settings.from_config(config.load(), config.load_secrets())
"""

import os
from dataclasses import dataclass
from typing import Any

import yaml
from dotenv import dotenv_values


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "port": 3000,
        "host": "0.0.0.0",
    },
    "panel": {
        "url": "http://localhost",
        "request_timeout": 15,
    },
    "relay": {
        "timeout": 10,
        "command_wait": 5,
    },
    "subusers": {
        "prune_revoked": False,
    },
    "platform": {
        "version": "0.5.0",
    },
    "data": {
        "store": "prism.json",
    },
}

# Secrets read from .env (or the process environment as a fallback).
KNOWN_SECRETS = [
    "PTERODACTYL_APPLICATION_KEY",
    "PTERODACTYL_CLIENT_KEY",
    "PRISM_SESSION_SECRET",
]


class ConfigManager:
    """
    Reads config.yaml (settings) and .env (secrets) for a Prism install.

    Attributes:
        project_dir: Root directory of the Prism project.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")

    @property
    def data_dir(self) -> str:
        return os.path.join(self.project_dir, "data")

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Missing values are filled from DEFAULTS, so a partial YAML file is
        always completed into a full configuration.

        Raises:
            ValueError: If config.yaml exists but cannot be parsed.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError) as e:
                raise ValueError(f"Invalid config.yaml: {e}") from e
            if not isinstance(user_config, dict):
                raise ValueError("config.yaml must contain a mapping at the top level")
            _deep_merge(config, user_config)

        return config

    def load_secrets(self) -> dict[str, str]:
        """
        Load secrets from .env, falling back to the process environment.

        Returns:
            Dict mapping each name in KNOWN_SECRETS to its value ("" if unset).
        """
        env_values = dotenv_values(self.env_path) if os.path.exists(self.env_path) else {}
        return {
            name: env_values.get(name) or os.environ.get(name, "")
            for name in KNOWN_SECRETS
        }

    def masked_secrets(self) -> dict[str, str]:
        """Secrets in a form safe for logs and the startup banner."""
        return {name: _mask_key(value) for name, value in self.load_secrets().items()}


@dataclass(frozen=True)
class Settings:
    """
    Process-wide, read-only runtime configuration.

    Attributes:
        panel_url:        Base URL of the Pterodactyl panel (no trailing slash).
        application_key:  Application API key (user lookups).
        client_key:       Client API key (server-scoped calls and websocket).
        session_secret:   HS256 secret used to sign session tokens.
        request_timeout:  Total timeout in seconds for one panel REST call.
        relay_timeout:    Hard bound in seconds on one relay session.
        command_wait:     Sampling window in seconds for console commands.
        prune_revoked:    Remove subuser records of users no longer listed.
        platform_version: Platform release route modules must target.
        store_path:       JSON file backing the key-value store.
    """

    panel_url: str
    application_key: str
    client_key: str
    session_secret: str
    request_timeout: float = 15.0
    relay_timeout: float = 10.0
    command_wait: float = 5.0
    prune_revoked: bool = False
    platform_version: str = "0.5.0"
    store_path: str = "data/prism.json"

    @classmethod
    def from_config(cls, config: dict, secrets: dict[str, str], data_dir: str = "data") -> "Settings":
        """
        Build settings from a loaded config dict and secrets.

        The client key falls back to the application key when only one key
        is configured.

        Raises:
            ValueError: If the panel URL, API key or session secret is missing.
        """
        panel_url = str(config["panel"].get("url") or "").rstrip("/")
        if not panel_url:
            raise ValueError("panel.url must be set in config.yaml")

        application_key = secrets.get("PTERODACTYL_APPLICATION_KEY", "")
        client_key = secrets.get("PTERODACTYL_CLIENT_KEY", "") or application_key
        if not client_key:
            raise ValueError("PTERODACTYL_CLIENT_KEY (or PTERODACTYL_APPLICATION_KEY) must be set")

        session_secret = secrets.get("PRISM_SESSION_SECRET", "")
        if not session_secret:
            raise ValueError("PRISM_SESSION_SECRET must be set")

        return cls(
            panel_url=panel_url,
            application_key=application_key or client_key,
            client_key=client_key,
            session_secret=session_secret,
            request_timeout=float(config["panel"]["request_timeout"]),
            relay_timeout=float(config["relay"]["timeout"]),
            command_wait=float(config["relay"]["command_wait"]),
            prune_revoked=bool(config["subusers"]["prune_revoked"]),
            platform_version=str(config["platform"]["version"]),
            store_path=os.path.join(data_dir, config["data"]["store"]),
        )

    def __repr__(self) -> str:
        return (
            f"Settings(panel_url={self.panel_url!r}, "
            f"application_key={_mask_key(self.application_key)!r}, "
            f"client_key={_mask_key(self.client_key)!r}, "
            f"relay_timeout={self.relay_timeout}, command_wait={self.command_wait})"
        )


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict[str, Any]) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _mask_key(value: str) -> str:
    """
    Mask a secret for safe display.

    Shows first 6 and last 4 characters. Values shorter than 12 characters
    are fully masked.
    """
    if not value or len(value) < 12:
        return "****" if value else ""
    return f"{value[:6]}****{value[-4:]}"
