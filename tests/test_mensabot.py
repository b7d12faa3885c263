from types import SimpleNamespace

import pytest

import mensabot
from mensa_core.tasks import Register


def make_update_and_context(chat_id, bot, provider, coordinator):
    update = SimpleNamespace(effective_chat=SimpleNamespace(id=chat_id))
    context = SimpleNamespace(bot=bot, bot_data={"provider": provider, "coordinator": coordinator})
    return update, context


@pytest.mark.asyncio
async def test_send_day_records_markup(coordinator, bot, provider, running):
    await coordinator.process(Register(chat_id=42, mensa_id=106, hour=6, minute=0))
    update, context = make_update_and_context(42, bot, provider, coordinator)

    async with running(coordinator):
        await mensabot.send_day(update, context, 1)
        await coordinator.join()

    assert bot.sent_to(42)[-1].text == "Plan 106 +1"
    assert coordinator.registrations[42].last_markup_id == bot.sent_to(42)[-1].message_id


@pytest.mark.asyncio
async def test_send_day_to_blocked_chat_is_logged(coordinator, bot, provider, running, caplog):
    await coordinator.process(Register(chat_id=42, mensa_id=106, hour=6, minute=0))
    bot.blocked.add(42)
    update, context = make_update_and_context(42, bot, provider, coordinator)

    async with running(coordinator):
        await mensabot.send_day(update, context, 0)
        await coordinator.join()

    assert bot.sent == []
    assert coordinator.registrations[42].last_markup_id is None
    assert "Failed to send plan to 42" in caplog.text


@pytest.mark.asyncio
async def test_send_day_without_registration_asks_for_start(coordinator, bot, provider, running):
    update, context = make_update_and_context(7, bot, provider, coordinator)

    async with running(coordinator):
        await mensabot.send_day(update, context, 0)

    assert [message.text for message in bot.sent_to(7)] == [mensabot.NO_DB_MSG]
