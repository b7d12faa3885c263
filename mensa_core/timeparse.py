"""
Reading send times from user messages.

`parse_time` handles the plain "HH:MM" form. When that fails and an Ollama
host is configured, `ai_parse_time` asks the model to find a time in free text.
"""

import logging
import re
from typing import Tuple

import requests

from mensa_core.config import BotConfig
from mensa_core.errors import InvalidTime, NoTimeGiven, OracleUnavailable, OracleUnconfigured

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])")

ORACLE_PROMPT = (
    "Finde EINE Uhrzeit. Antworte NUR 'HH:mm' ODER 'nicht vorhanden'. "
    "KEINE ERKLÄRUNG. Eingabe: #{text}#"
)


def parse_time(text: str | None) -> Tuple[int, int]:
    """
    Reads an "H:MM" or "HH:MM" time at the start of the text.

    Raises:
        NoTimeGiven: If there is no text at all.
        InvalidTime: If the text does not start with a valid time.
    """
    if text is None or not text.strip():
        raise NoTimeGiven("No time given")

    match = TIME_PATTERN.match(text.strip())
    if match is None:
        raise InvalidTime(f"'{text}' is not a time")

    return int(match.group(1)), int(match.group(2))


def command_argument(text: str | None) -> str | None:
    """Returns what follows the command word, e.g. '7:30' for '/uhrzeit 7:30'."""
    if not text:
        return None
    parts = text.split(maxsplit=1)
    if len(parts) < 2:
        return None
    return parts[1].strip() or None


def ai_parse_time(text: str, config: BotConfig) -> Tuple[int, int]:
    """
    Asks the configured Ollama model for the time contained in the text.

    Raises:
        OracleUnconfigured: If no host or model is configured.
        OracleUnavailable: If the API cannot be reached or answers garbage.
        InvalidTime: If the model found no time.
    """
    if not config.ollama_host or not config.ollama_model:
        logger.warning("Ollama API is unconfigured, cannot fancy-parse time")
        raise OracleUnconfigured("Ollama is not configured")

    prompt = ORACLE_PROMPT.format(text=text)
    logger.info(f"AI Query: '{prompt}'")

    try:
        resp = requests.post(
            f"{config.ollama_host}/generate",
            json={
                "model": config.ollama_model,
                "prompt": prompt,
                "stream": False,
                "keep_alive": -1,
            },
            timeout=30,
        )
        resp.raise_for_status()
        answer = resp.json()["response"]
    except (requests.exceptions.RequestException, ValueError, KeyError) as e:
        logger.warning(f"Ollama API unavailable: {e}")
        raise OracleUnavailable(str(e)) from e

    logger.info(f"AI Response: '{answer}'")
    return parse_time(answer)
