"""
The registration coordinator.

It is the only owner of the chat_id -> RegistrationEntry table. Command
handlers and scheduled jobs never touch that table; they send tasks, which
the coordinator applies strictly one after another. For every task it keeps
three things in step: the durable store, the scheduled jobs and the
in-memory table.

Callers that need an answer use `request()`/`query()`, which attach a
one-shot future to the task and wait for it with a timeout.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Dict, List
from uuid import UUID

from telegram import Bot
from telegram.error import TelegramError

from mensa_core.delivery import send_plan
from mensa_core.errors import CoordinatorUnavailable, MensaBotError, RegistrationMissing
from mensa_core.meals import MealPlanProvider
from mensa_core.scheduler import JobScheduler
from mensa_core.store import RegistrationStore
from mensa_core.tasks import (
    BroadcastUpdate,
    InsertMarkupMessageId,
    QueryRegistration,
    Register,
    RegistrationEntry,
    Task,
    Unregister,
    UpdateRegistration,
)

logger = logging.getLogger(__name__)

UPDATE_HEADER = "*__Planänderung:__*\n"


def format_time(hour: int | None, minute: int | None) -> str:
    """'07:05', with '--' for a missing part."""
    hour_text = "--" if hour is None else f"{hour:02}"
    minute_text = "--" if minute is None else f"{minute:02}"
    return f"{hour_text}:{minute_text}"


class RegistrationCoordinator:

    def __init__(
        self,
        store: RegistrationStore,
        scheduler: JobScheduler,
        provider: MealPlanProvider,
        bot: Bot,
        timezone: tzinfo,
        reply_timeout: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._provider = provider
        self._bot = bot
        self._timezone = timezone
        self._reply_timeout = reply_timeout
        self._clock = clock or (lambda: datetime.now(timezone))

        self._registrations: Dict[int, RegistrationEntry] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._handlers: Dict[type, Callable[[Task], Awaitable]] = {
            Register: self._handle_register,
            UpdateRegistration: self._handle_update,
            Unregister: self._handle_unregister,
            QueryRegistration: self._handle_query,
            InsertMarkupMessageId: self._handle_insert_markup,
            BroadcastUpdate: self._handle_broadcast,
        }

    @property
    def registrations(self) -> Dict[int, RegistrationEntry]:
        """A snapshot of the current table."""
        return dict(self._registrations)

    # Startup ----------------------------------------------------------------
    def load_jobs(self) -> int:
        """
        Rebuilds the table and the scheduled jobs from the store.

        Returns:
            The number of loaded registrations.
        """
        rows = self._store.load_all()
        for row in rows:
            job_uuid = self._schedule(row.chat_id, row.mensa_id, row.hour, row.minute)
            self._registrations[row.chat_id] = RegistrationEntry(
                job_uuid=job_uuid,
                mensa_id=row.mensa_id,
                hour=row.hour,
                minute=row.minute,
                last_markup_id=row.last_markup_id,
            )

        scheduled = sum(1 for entry in self._registrations.values() if entry.job_uuid is not None)
        logger.info(f"Loaded {len(rows)} registrations, {scheduled} with automatic messages")
        return len(rows)

    # Client side ------------------------------------------------------------
    def submit(self, task: Task) -> None:
        """Queues a task without waiting for it."""
        self._queue.put_nowait(task)

    async def request(self, task: Task, timeout: float | None = None):
        """
        Queues a task and waits until it has been processed.

        Returns:
            The task's result.

        Raises:
            CoordinatorUnavailable: If no answer arrives in time.
            MensaBotError: The error the task failed with.
        """
        task.reply = asyncio.get_running_loop().create_future()
        self.submit(task)
        try:
            return await asyncio.wait_for(task.reply, timeout or self._reply_timeout)
        except asyncio.TimeoutError as e:
            raise CoordinatorUnavailable(f"No answer for {type(task).__name__}") from e

    async def query(self, chat_id: int, timeout: float | None = None) -> RegistrationEntry | None:
        return await self.request(QueryRegistration(chat_id=chat_id), timeout)

    # Coordinator loop -------------------------------------------------------
    async def run(self) -> None:
        logger.info("Task coordinator ready.")
        while True:
            task = await self._queue.get()
            try:
                await self.process(task)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Waits until every queued task has been processed."""
        await self._queue.join()

    async def process(self, task: Task) -> None:
        if task.reply is not None and task.reply.cancelled():
            # the caller gave up waiting and was told to retry
            logger.warning(f"Dropping {task!r}, its caller timed out")
            return

        handler = self._handlers.get(type(task))
        if handler is None:
            logger.error(f"Dropping unknown task {task!r}")
            task.fail(TypeError(f"Unknown task {type(task).__name__}"))
            return

        try:
            result = await handler(task)
        except MensaBotError as e:
            logger.error(f"{type(task).__name__} failed: {e}")
            task.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {task!r}")
            task.fail(e)
        else:
            task.resolve(result)

    # Task handlers ----------------------------------------------------------
    async def _handle_register(self, task: Register) -> RegistrationEntry:
        logger.info(f"Register: {task.chat_id} for Mensa {task.mensa_id}")

        self._store.upsert_full(task.chat_id, task.mensa_id, task.hour, task.minute)

        previous = self._registrations.get(task.chat_id)
        if previous is not None and previous.job_uuid is not None:
            self._scheduler.remove(previous.job_uuid)

        entry = RegistrationEntry(
            job_uuid=self._schedule(task.chat_id, task.mensa_id, task.hour, task.minute),
            mensa_id=task.mensa_id,
            hour=task.hour,
            minute=task.minute,
            last_markup_id=previous.last_markup_id if previous else None,
        )
        self._registrations[task.chat_id] = entry
        return entry

    async def _handle_update(self, task: UpdateRegistration) -> RegistrationEntry:
        previous = self._registrations.get(task.chat_id)
        if previous is None:
            logger.error(f"Tried to update non-existent registration of {task.chat_id}")
            raise RegistrationMissing(task.chat_id)

        mensa_id = task.mensa_id if task.mensa_id is not None else previous.mensa_id
        hour = task.hour if task.hour is not None else previous.hour
        minute = task.minute if task.minute is not None else previous.minute

        if task.mensa_id is not None:
            logger.info(f"{task.chat_id} changed 📌 to {mensa_id}")
        if task.hour is not None or task.minute is not None:
            logger.info(f"{task.chat_id} changed 🕘: {format_time(hour, minute)}")

        self._store.update_partial(task.chat_id, mensa_id=task.mensa_id, hour=task.hour, minute=task.minute)

        job_uuid = previous.job_uuid
        if task.changes_schedule:
            if previous.job_uuid is not None:
                self._scheduler.remove(previous.job_uuid)
            job_uuid = self._schedule(task.chat_id, mensa_id, hour, minute)

        entry = replace(previous, job_uuid=job_uuid, mensa_id=mensa_id, hour=hour, minute=minute)
        self._registrations[task.chat_id] = entry
        return entry

    async def _handle_unregister(self, task: Unregister) -> RegistrationEntry:
        previous = self._registrations.get(task.chat_id)
        if previous is None:
            logger.error(f"Tried to unregister non-existent registration of {task.chat_id}")
            raise RegistrationMissing(task.chat_id)

        logger.info(f"Unregister: {task.chat_id}")

        self._store.clear_schedule(task.chat_id)
        if previous.job_uuid is not None:
            self._scheduler.remove(previous.job_uuid)

        entry = replace(previous, job_uuid=None, hour=None, minute=None)
        self._registrations[task.chat_id] = entry
        return entry

    async def _handle_query(self, task: QueryRegistration) -> RegistrationEntry | None:
        entry = self._registrations.get(task.chat_id)
        if entry is None:
            logger.warning(f"chat_id {task.chat_id} has no registration")
        return entry

    async def _handle_insert_markup(self, task: InsertMarkupMessageId) -> RegistrationEntry:
        previous = self._registrations.get(task.chat_id)
        if previous is None:
            logger.error(f"Markup message {task.message_id} for unregistered chat {task.chat_id}")
            raise RegistrationMissing(task.chat_id)

        self._store.update_partial(task.chat_id, markup_id=task.message_id)

        entry = replace(previous, last_markup_id=task.message_id)
        self._registrations[task.chat_id] = entry
        return entry

    async def _handle_broadcast(self, task: BroadcastUpdate) -> int:
        """Sends the changed plan to every chat that already got today's plan."""
        now = self._clock()
        logger.info(f"TodayMeals changed @Mensa {task.mensa_id}")

        recipients = [
            (chat_id, entry)
            for chat_id, entry in sorted(self._registrations.items())
            if self.should_receive_update(entry, task.mensa_id, now)
        ]
        if not recipients:
            return 0

        text = UPDATE_HEADER + await self._provider.build_message(0, task.mensa_id)

        sent = 0
        for chat_id, entry in recipients:
            try:
                message_id = await send_plan(self._bot, chat_id, text, entry.last_markup_id)
            except TelegramError as e:
                logger.error(f"Failed to send update to {chat_id}: {e}")
                continue

            logger.info(f"Sent update to {chat_id}")
            self.submit(InsertMarkupMessageId(chat_id=chat_id, message_id=message_id))
            sent += 1

        return sent

    @staticmethod
    def should_receive_update(entry: RegistrationEntry, mensa_id: int, now: datetime) -> bool:
        """
        A chat gets a plan change only if its own job has already sent
        today's plan: same location, active schedule, a weekday, and a send
        time at or before now.
        """
        if entry.mensa_id != mensa_id or entry.job_uuid is None or not entry.is_scheduled:
            return False
        if now.weekday() >= 5:
            return False
        return (entry.hour, entry.minute) <= (now.hour, now.minute)

    # Scheduled jobs ---------------------------------------------------------
    def _schedule(self, chat_id: int, mensa_id: int, hour: int | None, minute: int | None) -> UUID | None:
        if hour is None or minute is None:
            return None

        async def send_plan_job() -> None:
            await self.send_scheduled_plan(chat_id, mensa_id)

        return self._scheduler.add(chat_id, hour, minute, send_plan_job)

    async def send_scheduled_plan(self, chat_id: int, mensa_id: int) -> None:
        """Body of a chat's daily job; talks to the table only through tasks."""
        text = await self._provider.build_message(0, mensa_id)

        try:
            previous = await self.query(chat_id)
        except CoordinatorUnavailable as e:
            logger.error(f"Could not look up previous markup of {chat_id}: {e}")
            previous = None

        try:
            message_id = await send_plan(
                self._bot, chat_id, text, previous.last_markup_id if previous else None
            )
        except TelegramError as e:
            logger.error(f"Failed to send daily plan to {chat_id}: {e}")
            return

        self.submit(InsertMarkupMessageId(chat_id=chat_id, message_id=message_id))

    async def refresh_meal_plans(self) -> List[int]:
        """Runs the provider's refresh and broadcasts every changed location."""
        mensa_ids = sorted(self._provider.get_mensen())
        changed = await asyncio.to_thread(self._provider.refresh, mensa_ids)

        for mensa_id in changed:
            logger.info(f"Broadcasting update for today @ Mensa {mensa_id}")
            self.submit(BroadcastUpdate(mensa_id=mensa_id))
        return changed
