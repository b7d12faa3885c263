import asyncio
import logging
from telegram import Update, BotCommand
from telegram.constants import ParseMode
from telegram.ext import Application, CommandHandler, MessageHandler, filters, ConversationHandler, CallbackQueryHandler
from telegram.error import BadRequest, TelegramError
from typing import Tuple

from mensa_core.config import BotConfig, BACKEND_MENSIMATES, NO_DB_MSG
from mensa_core.coordinator import RegistrationCoordinator
from mensa_core.delivery import send_plan
from mensa_core.errors import ConfigError, CoordinatorUnavailable, RegistrationMissing, StoreError, NoTimeGiven, InvalidTime, OracleUnavailable, TimeParseError
from mensa_core.keyboards import MensaKeyboardAction, DAY_PREFIX, make_mensa_keyboard, make_days_keyboard, parse_callback_data
from mensa_core.meals import MealPlanProvider
from mensa_core.mensimates import MensiMatesProvider
from mensa_core.scheduler import JobScheduler
from mensa_core.store import RegistrationStore
from mensa_core.stuwe import StuWeProvider
from mensa_core.tasks import Register, UpdateRegistration, Unregister, InsertMarkupMessageId, RegistrationEntry
from mensa_core.timeparse import parse_time, command_argument, ai_parse_time

# Enable logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
# every getUpdates call is logged at INFO otherwise
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# Conversation states
AWAIT_TIME = 0

SELECT_MENSA_MSG = "Mensa auswählen:"
ASK_TIME_MSG = "Bitte mit Uhrzeit antworten:"
INVALID_TIME_MSG = "Eingegebene Zeit ist ungültig.\nBitte mit Uhrzeit antworten:"
ORACLE_ASKED_MSG = "Das Orakel wird befragt..."
ORACLE_UNSURE_MSG = "Das Orakel verharrt in Ungewissheit.\nBitte erneut:"
ORACLE_DOWN_MSG = "Das Orakel erhört unsere Bitten nicht.\nBitte im Format HH:mm antworten:"
BUSY_MSG = "Der Bot ist gerade beschäftigt, bitte später erneut versuchen."
NO_COMMAND_MSG = "Das ist kein Befehl."
DEFAULT_TIME_MSG = "Plan wird ab jetzt automatisch an Wochentagen 06:00 Uhr gesendet.\n\nÄndern mit /uhrzeit"

HELP_TEXT = (
    "/heute - Plan für heute\n"
    "/morgen - Plan für morgen\n"
    "/uebermorgen - Plan für übermorgen\n"
    "/andere - Plan einer anderen Mensa anzeigen\n"
    "/mensa - Mensa wechseln\n"
    "/uhrzeit - Uhrzeit der automatischen Nachricht ändern\n"
    "/subscribe - Plan automatisch senden\n"
    "/unsubscribe - Plan nicht mehr automatisch senden\n"
    "/start - Mensa auswählen und registrieren"
)

COMMANDS = [
    BotCommand("heute", "Plan für heute"),
    BotCommand("morgen", "Plan für morgen"),
    BotCommand("uebermorgen", "Plan für übermorgen"),
    BotCommand("andere", "Andere Mensa anzeigen"),
    BotCommand("mensa", "Mensa wechseln"),
    BotCommand("uhrzeit", "Sendezeit ändern"),
    BotCommand("subscribe", "Automatische Nachrichten aktivieren"),
    BotCommand("unsubscribe", "Automatische Nachrichten deaktivieren"),
    BotCommand("help", "Hilfe"),
]


def subscribed_msg(hour: int, minute: int) -> str:
    return f"Plan wird ab jetzt automatisch an Wochentagen {hour:02}:{minute:02} Uhr gesendet.\n\n/unsubscribe zum Deaktivieren"


def build_provider(config: BotConfig, store: RegistrationStore) -> MealPlanProvider:
    """Picks the meal plan backend named in the configuration."""
    if config.backend == BACKEND_MENSIMATES:
        return MensiMatesProvider(config)
    return StuWeProvider(config, store)


# Coordinator access
async def get_registration(update: Update, context) -> RegistrationEntry | None:
    """Looks up the chat's registration and tells the user when there is none."""
    coordinator: RegistrationCoordinator = context.bot_data["coordinator"]
    chat_id = update.effective_chat.id

    try:
        entry = await coordinator.query(chat_id)
    except (CoordinatorUnavailable, StoreError) as e:
        logger.warning(f"Query for {chat_id} failed: {e}")
        await context.bot.send_message(chat_id=chat_id, text=BUSY_MSG)
        return None

    if entry is None:
        await context.bot.send_message(chat_id=chat_id, text=NO_DB_MSG)
    return entry


async def apply_task(update: Update, context, task) -> bool:
    """Sends a state changing task to the coordinator. Returns True once it has been applied."""
    coordinator: RegistrationCoordinator = context.bot_data["coordinator"]
    chat_id = update.effective_chat.id

    try:
        await coordinator.request(task)
    except RegistrationMissing:
        await context.bot.send_message(chat_id=chat_id, text=NO_DB_MSG)
        return False
    except (CoordinatorUnavailable, StoreError) as e:
        logger.warning(f"{type(task).__name__} for {chat_id} failed: {e}")
        await context.bot.send_message(chat_id=chat_id, text=BUSY_MSG)
        return False
    return True


# Plan commands
async def send_day(update: Update, context, days_forward: int) -> None:
    entry = await get_registration(update, context)
    if entry is None:
        return

    provider: MealPlanProvider = context.bot_data["provider"]
    coordinator: RegistrationCoordinator = context.bot_data["coordinator"]
    chat_id = update.effective_chat.id

    text = await provider.build_message(days_forward, entry.mensa_id)
    try:
        message_id = await send_plan(context.bot, chat_id, text, entry.last_markup_id)
    except TelegramError as e:
        logger.error(f"Failed to send plan to {chat_id}: {e}")
        return
    coordinator.submit(InsertMarkupMessageId(chat_id=chat_id, message_id=message_id))


async def today_command(update: Update, context):
    await send_day(update, context, 0)


async def tomorrow_command(update: Update, context):
    await send_day(update, context, 1)


async def day_after_tomorrow_command(update: Update, context):
    await send_day(update, context, 2)


# Registration commands
async def start(update: Update, context):
    """Shows the location keyboard; choosing one registers the chat."""
    provider: MealPlanProvider = context.bot_data["provider"]
    await update.message.reply_text(
        SELECT_MENSA_MSG,
        reply_markup=make_mensa_keyboard(provider.get_mensen(), MensaKeyboardAction.REGISTER),
    )


async def other_mensa(update: Update, context):
    """Shows the plan of another location once, without changing the registration."""
    if await get_registration(update, context) is None:
        return
    provider: MealPlanProvider = context.bot_data["provider"]
    await update.message.reply_text(
        SELECT_MENSA_MSG,
        reply_markup=make_mensa_keyboard(provider.get_mensen(), MensaKeyboardAction.DISPLAY_ONCE),
    )


async def change_mensa(update: Update, context):
    if await get_registration(update, context) is None:
        return
    provider: MealPlanProvider = context.bot_data["provider"]
    await update.message.reply_text(
        SELECT_MENSA_MSG,
        reply_markup=make_mensa_keyboard(provider.get_mensen(), MensaKeyboardAction.UPDATE),
    )


async def subscribe(update: Update, context):
    entry = await get_registration(update, context)
    if entry is None:
        return

    if entry.is_scheduled:
        await update.message.reply_text("Automatische Nachrichten sind schon aktiviert.")
        return

    task = UpdateRegistration(chat_id=update.effective_chat.id, hour=6, minute=0)
    if await apply_task(update, context, task):
        await update.message.reply_text(DEFAULT_TIME_MSG)


async def unsubscribe(update: Update, context):
    entry = await get_registration(update, context)
    if entry is None:
        return

    if not entry.is_scheduled:
        await update.message.reply_text("Automatische Nachrichten waren bereits deaktiviert.")
        return

    if await apply_task(update, context, Unregister(chat_id=update.effective_chat.id)):
        await update.message.reply_text("Plan wird nicht mehr automatisch gesendet.")


# Send time conversation
async def read_time(update: Update, context, text: str | None) -> Tuple[int, int] | None:
    """
    Parses the user's time, falling back to the Ollama oracle for free text.
    Answers the user itself whenever no time could be read.
    """
    config: BotConfig = context.bot_data["config"]

    try:
        return parse_time(text)
    except NoTimeGiven:
        await update.message.reply_text(ASK_TIME_MSG)
        return None
    except InvalidTime:
        if not config.ollama_host or not config.ollama_model:
            await update.message.reply_text(INVALID_TIME_MSG)
            return None

    await update.message.reply_text(ORACLE_ASKED_MSG)
    try:
        return await asyncio.to_thread(ai_parse_time, text, config)
    except OracleUnavailable:
        await update.message.reply_text(ORACLE_DOWN_MSG)
    except TimeParseError:
        await update.message.reply_text(ORACLE_UNSURE_MSG)
    return None


async def apply_time(update: Update, context, text: str | None) -> int:
    parsed = await read_time(update, context, text)
    if parsed is None:
        return AWAIT_TIME

    hour, minute = parsed
    task = UpdateRegistration(chat_id=update.effective_chat.id, hour=hour, minute=minute)
    if await apply_task(update, context, task):
        await update.message.reply_text(subscribed_msg(hour, minute))
    return ConversationHandler.END


async def change_time(update: Update, context) -> int:
    """Entry point of /uhrzeit; the time may follow the command directly."""
    if await get_registration(update, context) is None:
        return ConversationHandler.END

    argument = command_argument(update.message.text)
    if argument is None:
        await update.message.reply_text(ASK_TIME_MSG)
        return AWAIT_TIME
    return await apply_time(update, context, argument)


async def receive_time(update: Update, context) -> int:
    return await apply_time(update, context, update.message.text)


async def cancel(update: Update, context) -> int:
    """Cancels and ends the conversation."""
    await update.message.reply_text("Abgebrochen.")
    return ConversationHandler.END


async def help_command(update: Update, context):
    await update.message.reply_text(HELP_TEXT)


async def default_handler(update: Update, context):
    """Responds to non-command text."""
    logger.info(f"Unrecognized message received from {update.effective_chat.id}: {update.message.text}")
    await update.message.reply_text(NO_COMMAND_MSG)


# Inline keyboards
async def handle_callback(update: Update, context):
    """Handles location choices and the day selector under plan messages."""
    query = update.callback_query
    await query.answer()

    parsed = parse_callback_data(query.data)
    if parsed is None:
        logger.warning(f"Unknown callback data from {update.effective_chat.id}: {query.data}")
        return

    prefix, number = parsed
    chat_id = update.effective_chat.id
    provider: MealPlanProvider = context.bot_data["provider"]
    mensen = provider.get_mensen()

    if prefix == DAY_PREFIX:
        entry = await get_registration(update, context)
        if entry is None:
            return
        text = await provider.build_message(number, entry.mensa_id)
        try:
            await query.edit_message_text(text, parse_mode=ParseMode.MARKDOWN_V2, reply_markup=make_days_keyboard())
        except BadRequest as e:
            # same day pressed twice
            logger.debug(f"Day selector edit in {chat_id} skipped: {e}")
        return

    if number not in mensen:
        logger.warning(f"Unknown mensa {number} chosen by {chat_id}")
        return

    if prefix == MensaKeyboardAction.REGISTER.value:
        if await apply_task(update, context, Register(chat_id=chat_id, mensa_id=number, hour=6, minute=0)):
            await query.edit_message_text(f"Gewählte Mensa: {mensen[number]}")
            await context.bot.send_message(
                chat_id=chat_id,
                text=DEFAULT_TIME_MSG,
            )

    elif prefix == MensaKeyboardAction.UPDATE.value:
        if await apply_task(update, context, UpdateRegistration(chat_id=chat_id, mensa_id=number)):
            await query.edit_message_text(f"Gewählte Mensa: {mensen[number]}")

    elif prefix == MensaKeyboardAction.DISPLAY_ONCE.value:
        text = await provider.build_message(0, number)
        await query.edit_message_text(text, parse_mode=ParseMode.MARKDOWN_V2)


# Application lifecycle
async def post_init(application: Application) -> None:
    """Fills the meal cache, restores all jobs and starts the coordinator."""
    config: BotConfig = application.bot_data["config"]
    provider: MealPlanProvider = application.bot_data["provider"]
    scheduler: JobScheduler = application.bot_data["scheduler"]
    coordinator: RegistrationCoordinator = application.bot_data["coordinator"]

    logger.info("Refreshing meal plans before loading jobs...")
    await asyncio.to_thread(provider.refresh, sorted(provider.get_mensen()))

    coordinator.load_jobs()
    application.bot_data["coordinator_task"] = asyncio.create_task(coordinator.run())

    scheduler.add_repeating(coordinator.refresh_meal_plans, config.cache_refresh_minutes, "Meal cache refresh")
    logger.info(f"Refreshing meal plans every {config.cache_refresh_minutes} minutes")

    await application.bot.set_my_commands(COMMANDS)


async def post_shutdown(application: Application) -> None:
    task = application.bot_data.get("coordinator_task")
    if task is not None:
        task.cancel()
    logger.info("Coordinator stopped.")


def main():
    """Start the bot."""
    try:
        config = BotConfig.load()
    except ConfigError as e:
        logger.error(f"FATAL: {e}")
        return

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        store = RegistrationStore(config.db_file)
    except StoreError as e:
        logger.error(f"FATAL: Cannot open database {config.db_file}: {e}")
        return

    provider = build_provider(config, store)
    logger.info(f"Using backend '{config.backend}' with database {config.db_file}")

    application = (
        Application.builder()
        .token(config.token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    scheduler = JobScheduler(application.job_queue, config.timezone)
    coordinator = RegistrationCoordinator(
        store,
        scheduler,
        provider,
        application.bot,
        config.timezone,
        reply_timeout=config.reply_timeout,
    )
    application.bot_data.update({
        "config": config,
        "provider": provider,
        "scheduler": scheduler,
        "coordinator": coordinator,
    })

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("heute", today_command))
    application.add_handler(CommandHandler("morgen", tomorrow_command))
    application.add_handler(CommandHandler("uebermorgen", day_after_tomorrow_command))
    application.add_handler(CommandHandler("andere", other_mensa))
    application.add_handler(CommandHandler("mensa", change_mensa))
    application.add_handler(CommandHandler("subscribe", subscribe))
    application.add_handler(CommandHandler("unsubscribe", unsubscribe))

    time_handler = ConversationHandler(
        entry_points=[CommandHandler("uhrzeit", change_time)],
        states={
            AWAIT_TIME: [MessageHandler(filters.TEXT & ~filters.COMMAND, receive_time)],
        },
        fallbacks=[CommandHandler("cancel", cancel)],
    )
    application.add_handler(time_handler)

    application.add_handler(CallbackQueryHandler(handle_callback))

    application.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, default_handler)
    )

    print("\nBot is running... press Ctrl-C to stop.")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
