import pytest

from prism.config import ConfigManager, Settings
from prism.errors import IncompatibleModuleError
from prism.registry import PrismModule, validate_modules


SECRETS = {
    "PTERODACTYL_APPLICATION_KEY": "ptla_0123456789abcdef",
    "PTERODACTYL_CLIENT_KEY": "",
    "PRISM_SESSION_SECRET": "s3cret",
}


def test_load_fills_defaults_and_merges_yaml(tmp_path):
    (tmp_path / "config.yaml").write_text("panel:\n  url: https://panel.example.com/\nrelay:\n  timeout: 4\n")
    config = ConfigManager(str(tmp_path)).load()
    assert config["panel"]["url"] == "https://panel.example.com/"
    assert config["panel"]["request_timeout"] == 15
    assert config["relay"] == {"timeout": 4, "command_wait": 5}


def test_load_rejects_broken_yaml(tmp_path):
    (tmp_path / "config.yaml").write_text("panel: [unclosed\n")
    with pytest.raises(ValueError):
        ConfigManager(str(tmp_path)).load()


def test_secrets_come_from_dotenv(tmp_path):
    (tmp_path / ".env").write_text("PTERODACTYL_CLIENT_KEY=ptlc_abcdefghijklmnop\n")
    manager = ConfigManager(str(tmp_path))
    assert manager.load_secrets()["PTERODACTYL_CLIENT_KEY"] == "ptlc_abcdefghijklmnop"
    assert manager.masked_secrets()["PTERODACTYL_CLIENT_KEY"] == "ptlc_a****mnop"


def test_settings_from_config(tmp_path):
    manager = ConfigManager(str(tmp_path))
    config = manager.load()
    config["panel"]["url"] = "https://panel.example.com/"
    settings = Settings.from_config(config, SECRETS, data_dir=manager.data_dir)

    assert settings.panel_url == "https://panel.example.com"
    assert settings.client_key == SECRETS["PTERODACTYL_APPLICATION_KEY"]
    assert settings.relay_timeout == 10.0
    assert settings.store_path.endswith("prism.json")
    assert SECRETS["PTERODACTYL_APPLICATION_KEY"] not in repr(settings)


def test_settings_require_secrets(tmp_path):
    config = ConfigManager(str(tmp_path)).load()
    with pytest.raises(ValueError):
        Settings.from_config(config, {**SECRETS, "PRISM_SESSION_SECRET": ""})
    with pytest.raises(ValueError):
        Settings.from_config(config, {**SECRETS, "PTERODACTYL_APPLICATION_KEY": ""})


def test_validate_modules_rejects_platform_mismatch():
    def factory(services):
        return None

    validate_modules([PrismModule("server:core", 3, "0.5.0", factory)], "0.5.0")
    with pytest.raises(IncompatibleModuleError):
        validate_modules([PrismModule("server:core", 3, "0.4.0", factory)], "0.5.0")
    with pytest.raises(IncompatibleModuleError):
        validate_modules([PrismModule("server:core", 2, "0.5.0", factory)], "0.5.0")
    with pytest.raises(IncompatibleModuleError):
        validate_modules([
            PrismModule("server:core", 3, "0.5.0", factory),
            PrismModule("server:core", 3, "0.5.0", factory),
        ], "0.5.0")


def test_configure_logging_is_idempotent(tmp_path):
    from prism.logging_setup import configure_logging

    logger = configure_logging("DEBUG", log_dir=str(tmp_path / "logs"))
    handlers = list(logger.handlers)
    assert configure_logging("INFO") is logger
    assert logger.handlers == handlers
