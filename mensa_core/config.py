"""
Bot configuration.

All settings are read from the environment (after loading an optional .env
file) into a single BotConfig that is built once at startup and handed to
every component that needs it.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from mensa_core.errors import ConfigError

BACKEND_STUWE = "stuwe"
BACKEND_MENSIMATES = "mensimates"

DEFAULT_DB_FILES = {
    BACKEND_STUWE: "stuwe.sqlite",
    BACKEND_MENSIMATES: "mensimates.sqlite",
}

# Studentenwerk Leipzig location ids
MENSEN: Dict[int, str] = {
    106: "Mensa am Park",
    111: "Mensa Peterssteinweg",
    115: "Mensa am Elsterbecken",
    118: "Mensa Academica",
    127: "Menseria am Botanischen Garten",
    140: "Mensa Schönauer Str.",
    153: "Cafeteria Dittrichring",
    162: "Mensa am Medizincampus",
    170: "Mensa An den Tierkliniken",
}

NO_DB_MSG = "Bitte zuerst /start ausführen"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BotConfig:
    """Everything the bot needs to know at runtime."""

    token: str
    backend: str = BACKEND_STUWE
    db_file: Path = Path(DEFAULT_DB_FILES[BACKEND_STUWE])
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("Europe/Berlin"))
    mensen: Dict[int, str] = field(default_factory=lambda: dict(MENSEN))
    stuwe_url: str = "https://www.studentenwerk-leipzig.de/mensen-cafeterien/speiseplan"
    mensimates_url: str = "https://api.olech2412.de/mensaHub"
    mensimates_user: str | None = None
    mensimates_password: str | None = None
    ollama_host: str | None = None
    ollama_model: str | None = None
    cache_refresh_minutes: int = 5
    reply_timeout: float = 5.0
    debug: bool = False

    @classmethod
    def load(cls, env_path: str | os.PathLike | None = ".env") -> "BotConfig":
        """
        Builds the configuration from environment variables.

        Raises:
            ConfigError: If the token is missing or a value cannot be parsed.
        """
        if env_path is not None:
            load_dotenv(env_path)

        token = os.getenv("TELEGRAM_BOT_TOKEN")
        if not token:
            raise ConfigError("TELEGRAM_BOT_TOKEN is not set.")

        backend = os.getenv("MENSA_BACKEND", BACKEND_STUWE).strip().lower()
        if backend not in DEFAULT_DB_FILES:
            raise ConfigError(
                f"Unknown MENSA_BACKEND '{backend}', expected one of: {', '.join(DEFAULT_DB_FILES)}"
            )

        tz_name = os.getenv("BOT_TIMEZONE", "Europe/Berlin")
        try:
            timezone = ZoneInfo(tz_name)
        except ZoneInfoNotFoundError as e:
            raise ConfigError(f"Unknown BOT_TIMEZONE '{tz_name}'") from e

        try:
            cache_refresh_minutes = int(os.getenv("CACHE_REFRESH_MINUTES", "5"))
            reply_timeout = float(os.getenv("REPLY_TIMEOUT", "5"))
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        defaults = cls(token=token)
        return cls(
            token=token,
            backend=backend,
            db_file=Path(os.getenv("DB_FILE", DEFAULT_DB_FILES[backend])).expanduser(),
            timezone=timezone,
            stuwe_url=os.getenv("STUWE_URL", defaults.stuwe_url),
            mensimates_url=os.getenv("MENSIMATES_URL", defaults.mensimates_url),
            mensimates_user=os.getenv("MENSIMATES_USER") or None,
            mensimates_password=os.getenv("MENSIMATES_PASSWORD") or None,
            ollama_host=os.getenv("OLLAMA_HOST") or None,
            ollama_model=os.getenv("OLLAMA_MODEL") or None,
            cache_refresh_minutes=cache_refresh_minutes,
            reply_timeout=reply_timeout,
            debug=_env_flag("DEBUG"),
        )
