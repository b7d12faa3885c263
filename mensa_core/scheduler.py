"""
Thin wrapper around the bot's JobQueue.

Per-chat plan jobs fire Monday to Friday at the chat's local send time and
are addressed by an opaque UUID handle, so the coordinator never touches
JobQueue objects directly.
"""

import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Awaitable, Callable, Dict, Tuple
from uuid import UUID, uuid4

from telegram.ext import Job, JobQueue

logger = logging.getLogger(__name__)

# JobQueue counts days like cron: 0 = Sunday
WEEKDAYS = (1, 2, 3, 4, 5)
CRON_WEEKDAYS = "Mon,Tue,Wed,Thu,Fri"

JobCallback = Callable[[], Awaitable[None]]


def to_reference_time(hour: int, minute: int, local_tz: tzinfo, on_day: date | None = None) -> Tuple[int, int]:
    """Converts a local send time into the scheduler's reference time (UTC)."""
    on_day = on_day or datetime.now(local_tz).date()
    local = datetime.combine(on_day, time(hour, minute), tzinfo=local_tz)
    reference = local.astimezone(timezone.utc)
    return reference.hour, reference.minute


def cron_expression(hour: int, minute: int, local_tz: tzinfo, on_day: date | None = None) -> str:
    ref_hour, ref_minute = to_reference_time(hour, minute, local_tz, on_day)
    return f"0 {ref_minute} {ref_hour} * * {CRON_WEEKDAYS}"


class JobScheduler:
    """Adds and removes the recurring per-chat jobs."""

    def __init__(self, job_queue: JobQueue, local_tz: tzinfo):
        self._job_queue = job_queue
        self._local_tz = local_tz
        self._jobs: Dict[UUID, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_uuid: UUID) -> bool:
        return job_uuid in self._jobs

    def add(self, chat_id: int, hour: int, minute: int, callback: JobCallback) -> UUID:
        """
        Registers a weekday job for a chat.

        Returns:
            The handle needed to remove the job again.
        """
        job_uuid = uuid4()

        async def run_job(context) -> None:
            await callback()

        job = self._job_queue.run_daily(
            run_job,
            time=time(hour=hour, minute=minute, tzinfo=self._local_tz),
            days=WEEKDAYS,
            name=f"plan:{chat_id}:{job_uuid}",
            chat_id=chat_id,
        )
        self._jobs[job_uuid] = job
        logger.debug(
            f"Added job {job_uuid} for {chat_id}: '{cron_expression(hour, minute, self._local_tz)}'"
        )
        return job_uuid

    def remove(self, job_uuid: UUID) -> bool:
        """Schedules removal of a job. Returns False for unknown handles."""
        job = self._jobs.pop(job_uuid, None)
        if job is None:
            logger.warning(f"Tried to remove unknown job {job_uuid}")
            return False
        job.schedule_removal()
        return True

    def add_repeating(self, callback: JobCallback, minutes: int, name: str) -> Job:
        """Runs a maintenance callback every few minutes."""

        async def run_job(context) -> None:
            await callback()

        return self._job_queue.run_repeating(run_job, interval=minutes * 60, name=name)
