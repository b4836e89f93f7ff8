"""
Periodic full resync.

A resync job recomputes the filter from the relation table, repairing a
filter left stale by a crash between the provider update and the relation
writes. The scheduler only enqueues; the worker runs the job in order with
every other batch.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from croniter import croniter

from trackmux.jobs.queue import JobQueue
from trackmux.models.jobs import JobRecord, ResyncPayload

logger = logging.getLogger(__name__)


class ResyncScheduler:
    """Enqueue a resync job each time the cron expression fires."""

    def __init__(
        self,
        queue: JobQueue,
        cron_expression: str,
        on_enqueue: Optional[Callable[[], None]] = None,
        start_time: Optional[datetime] = None,
    ):
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid resync cron expression: {cron_expression!r}")
        self.queue = queue
        self.cron_expression = cron_expression
        self.on_enqueue = on_enqueue
        self._schedule = croniter(cron_expression, start_time or datetime.utcnow())
        self.next_fire: datetime = self._schedule.get_next(datetime)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def tick(self, now: Optional[datetime] = None) -> Optional[JobRecord]:
        """Enqueue a resync if the schedule has fired since the last tick."""
        now = now or datetime.utcnow()
        if now < self.next_fire:
            return None
        while self.next_fire <= now:
            self.next_fire = self._schedule.get_next(datetime)

        if self.queue.has_pending(ResyncPayload().kind):
            logger.info("Resync already pending; skipping scheduled run")
            return None
        job = self.queue.enqueue(ResyncPayload(reason="scheduled"))
        if self.on_enqueue is not None:
            self.on_enqueue()
        return job

    async def run(self) -> None:
        logger.info("Resync scheduled on %r, next at %s", self.cron_expression, self.next_fire)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduled resync failed to enqueue")
            delay = max(0.0, (self.next_fire - datetime.utcnow()).total_seconds())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="resync-scheduler")
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
