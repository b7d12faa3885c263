"""Sending plan messages that carry the day selector."""

import logging

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError

from mensa_core.keyboards import make_days_keyboard

logger = logging.getLogger(__name__)


async def retract_markup(bot: Bot, chat_id: int, message_id: int) -> None:
    """Removes the inline keyboard of an older message. Failures are ignored."""
    try:
        await bot.edit_message_reply_markup(chat_id=chat_id, message_id=message_id, reply_markup=None)
    except BadRequest as e:
        # message too old, already edited or deleted by the user
        logger.debug(f"Could not retract markup {message_id} in {chat_id}: {e}")
    except TelegramError as e:
        logger.warning(f"Could not retract markup {message_id} in {chat_id}: {e}")


async def send_plan(bot: Bot, chat_id: int, text: str, previous_markup_id: int | None = None) -> int:
    """
    Sends a plan with the day selector and retracts the previous selector.

    Returns:
        The id of the new message, which now holds the chat's only selector.

    Raises:
        TelegramError: If the new message could not be sent.
    """
    message = await bot.send_message(
        chat_id=chat_id,
        text=text,
        parse_mode=ParseMode.MARKDOWN_V2,
        reply_markup=make_days_keyboard(),
    )

    if previous_markup_id is not None and previous_markup_id != message.message_id:
        await retract_markup(bot, chat_id, previous_markup_id)

    return message.message_id
