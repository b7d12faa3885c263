"""Inline keyboards and their callback data."""

from enum import Enum
from typing import Dict, List, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup


class MensaKeyboardAction(str, Enum):
    REGISTER = "m_regist"
    UPDATE = "m_upd"
    DISPLAY_ONCE = "m_disp"


DAY_PREFIX = "day"
DAY_BUTTONS = (("Heute", 0), ("Morgen", 1), ("Überm.", 2))


def make_mensa_keyboard(mensen: Dict[int, str], action: MensaKeyboardAction) -> InlineKeyboardMarkup:
    """One button per location, sorted by name."""
    keyboard: List[List[InlineKeyboardButton]] = [
        [InlineKeyboardButton(name, callback_data=f"{action.value}:{mensa_id}")]
        for mensa_id, name in sorted(mensen.items(), key=lambda item: item[1])
    ]
    return InlineKeyboardMarkup(keyboard)


def make_days_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton(label, callback_data=f"{DAY_PREFIX}:{days_forward}")
            for label, days_forward in DAY_BUTTONS
        ]
    ])


def parse_callback_data(data: str | None) -> Tuple[str, int] | None:
    """
    Splits callback data like 'm_upd:106' or 'day:1'.

    Returns:
        (prefix, number), or None if the data is not one of ours.
    """
    if not data or ":" not in data:
        return None

    prefix, _, value = data.partition(":")
    known = {action.value for action in MensaKeyboardAction} | {DAY_PREFIX}
    if prefix not in known or not value.isdigit():
        return None

    number = int(value)
    if prefix == DAY_PREFIX and number not in {days for _, days in DAY_BUTTONS}:
        return None
    return prefix, number
