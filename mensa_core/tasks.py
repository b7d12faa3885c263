"""
Task protocol between the command handlers, the scheduled jobs and the
RegistrationCoordinator.

Every message sent to the coordinator is one of the task classes below.
A task may carry a one-shot `reply` future; the coordinator resolves it with
the task's result (or its error) once the task has been processed, so each
caller receives exactly its own answer.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class RegistrationEntry:
    """In-memory subscription state of one chat."""

    job_uuid: UUID | None
    mensa_id: int
    hour: int | None = None
    minute: int | None = None
    last_markup_id: int | None = None

    @property
    def is_scheduled(self) -> bool:
        return self.hour is not None and self.minute is not None


@dataclass
class Task:
    reply: asyncio.Future | None = field(default=None, init=False, repr=False, compare=False)

    def resolve(self, result: Any = None) -> None:
        if self.reply is not None and not self.reply.done():
            self.reply.set_result(result)

    def fail(self, error: BaseException) -> None:
        if self.reply is not None and not self.reply.done():
            self.reply.set_exception(error)


@dataclass
class Register(Task):
    chat_id: int
    mensa_id: int
    hour: int
    minute: int


@dataclass
class UpdateRegistration(Task):
    chat_id: int
    mensa_id: int | None = None
    hour: int | None = None
    minute: int | None = None

    @property
    def changes_schedule(self) -> bool:
        return self.mensa_id is not None or self.hour is not None or self.minute is not None


@dataclass
class Unregister(Task):
    chat_id: int


@dataclass
class QueryRegistration(Task):
    chat_id: int


@dataclass
class InsertMarkupMessageId(Task):
    chat_id: int
    message_id: int


@dataclass
class BroadcastUpdate(Task):
    mensa_id: int
