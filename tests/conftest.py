import asyncio
import contextlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from types import SimpleNamespace
from typing import Dict, List
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import pytest
from telegram.error import Forbidden

from mensa_core.config import BotConfig
from mensa_core.coordinator import RegistrationCoordinator
from mensa_core.store import RegistrationStore

BERLIN = ZoneInfo("Europe/Berlin")

# Monday
MONDAY_8AM = datetime(2024, 10, 14, 8, 0, tzinfo=BERLIN)


@dataclass
class SentMessage:
    chat_id: int
    text: str
    message_id: int
    reply_markup: object = None


class FakeBot:
    """Records outgoing messages; chats in `blocked` raise Forbidden."""

    def __init__(self):
        self.sent: List[SentMessage] = []
        self.retracted: List[tuple] = []
        self.blocked = set()
        self._next_id = 1000

    async def send_message(self, chat_id, text, **kwargs):
        if chat_id in self.blocked:
            raise Forbidden("Forbidden: bot was blocked by the user")
        self._next_id += 1
        self.sent.append(SentMessage(chat_id, text, self._next_id, kwargs.get("reply_markup")))
        return SimpleNamespace(message_id=self._next_id, chat_id=chat_id)

    async def edit_message_reply_markup(self, chat_id, message_id, reply_markup=None):
        self.retracted.append((chat_id, message_id))

    def sent_to(self, chat_id) -> List[SentMessage]:
        return [message for message in self.sent if message.chat_id == chat_id]


@dataclass
class ScheduledJob:
    chat_id: int
    hour: int
    minute: int
    callback: object


class FakeScheduler:
    """Same surface as JobScheduler, without a JobQueue behind it."""

    def __init__(self):
        self.jobs: Dict[UUID, ScheduledJob] = {}
        self.removed: List[UUID] = []

    def __len__(self):
        return len(self.jobs)

    def __contains__(self, job_uuid):
        return job_uuid in self.jobs

    def add(self, chat_id, hour, minute, callback) -> UUID:
        job_uuid = uuid4()
        self.jobs[job_uuid] = ScheduledJob(chat_id, hour, minute, callback)
        return job_uuid

    def remove(self, job_uuid) -> bool:
        self.removed.append(job_uuid)
        return self.jobs.pop(job_uuid, None) is not None


class FakeProvider:
    """Renders 'Plan <mensa> +<days>' and reports `changed` on refresh."""

    def __init__(self):
        self.changed: List[int] = []
        self.requests: List[tuple] = []

    def get_mensen(self):
        return {106: "Mensa am Park", 140: "Mensa Schönauer Str."}

    def refresh(self, mensa_ids):
        return list(self.changed)

    async def build_message(self, days_forward, mensa_id):
        self.requests.append((days_forward, mensa_id))
        return f"Plan {mensa_id} +{days_forward}"


class FakeClock:

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def config(tmp_path):
    return BotConfig(token="123:TEST", db_file=tmp_path / "bot.sqlite")


@pytest.fixture
def store(tmp_path):
    return RegistrationStore(tmp_path / "bot.sqlite")


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock(MONDAY_8AM)


@pytest.fixture
def make_coordinator(store, bot, provider, clock):
    def _make(scheduler, reply_timeout=1.0):
        return RegistrationCoordinator(
            store, scheduler, provider, bot, BERLIN, reply_timeout=reply_timeout, clock=clock
        )
    return _make


@pytest.fixture
def coordinator(make_coordinator, scheduler):
    return make_coordinator(scheduler)


@pytest.fixture
def running():
    """Runs a coordinator loop for the duration of an `async with` block."""

    @asynccontextmanager
    async def _running(coordinator):
        loop_task = asyncio.create_task(coordinator.run())
        try:
            yield coordinator
        finally:
            loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await loop_task

    return _running
