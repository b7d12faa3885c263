from pathlib import Path

import pytest

from mensa_core.config import BotConfig
from mensa_core.errors import ConfigError

ENV_VARS = [
    "TELEGRAM_BOT_TOKEN", "MENSA_BACKEND", "DB_FILE", "BOT_TIMEZONE", "STUWE_URL",
    "MENSIMATES_URL", "MENSIMATES_USER", "MENSIMATES_PASSWORD", "OLLAMA_HOST",
    "OLLAMA_MODEL", "CACHE_REFRESH_MINUTES", "REPLY_TIMEOUT", "DEBUG",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:TEST")

    config = BotConfig.load(env_path=None)

    assert config.backend == "stuwe"
    assert config.db_file == Path("stuwe.sqlite")
    assert str(config.timezone) == "Europe/Berlin"
    assert config.cache_refresh_minutes == 5
    assert config.reply_timeout == 5.0
    assert config.debug is False
    assert config.ollama_host is None


def test_mensimates_backend_uses_own_database(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:TEST")
    monkeypatch.setenv("MENSA_BACKEND", "MensiMates")
    monkeypatch.setenv("DEBUG", "true")

    config = BotConfig.load(env_path=None)

    assert config.backend == "mensimates"
    assert config.db_file == Path("mensimates.sqlite")
    assert config.debug is True


def test_values_from_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("TELEGRAM_BOT_TOKEN=456:FILE\nREPLY_TIMEOUT=2.5\nDB_FILE=data/bot.sqlite\n")

    config = BotConfig.load(env_file)

    assert config.token == "456:FILE"
    assert config.reply_timeout == 2.5
    assert config.db_file == Path("data/bot.sqlite")


@pytest.mark.parametrize(
    "env",
    [
        {},
        {"TELEGRAM_BOT_TOKEN": "123:TEST", "MENSA_BACKEND": "openmensa"},
        {"TELEGRAM_BOT_TOKEN": "123:TEST", "BOT_TIMEZONE": "Mars/Olympus"},
        {"TELEGRAM_BOT_TOKEN": "123:TEST", "CACHE_REFRESH_MINUTES": "often"},
    ],
)
def test_invalid_settings(monkeypatch, env):
    for name, value in env.items():
        monkeypatch.setenv(name, value)

    with pytest.raises(ConfigError):
        BotConfig.load(env_path=None)
