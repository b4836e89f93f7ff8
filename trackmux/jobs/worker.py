"""
Reconciliation worker: the single consumer of the job queue.

Behavioral Contract:
- Exactly one job executes at a time (concurrency = 1).
- Job starts are rate limited (default 10 per 60 seconds).
- Success completes the job. A non-retryable error fails it at once. A
  retryable error schedules the job again with exponential backoff until
  its attempts are exhausted, then fails it with the last error.
- A job error never stops the worker loop.
- Queue writes run off the event loop with a timeout. An outcome that cannot
  be recorded returns the job to the head of the queue.
- A job that is already running when stop() is called runs to the end.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Callable, Optional, TypeVar

from aiolimiter import AsyncLimiter

from trackmux.errors import StorageError, TrackmuxError
from trackmux.jobs.executor import ReconciliationExecutor
from trackmux.jobs.queue import JobQueue
from trackmux.models.config import QueueConfig
from trackmux.models.jobs import JobRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tries at writing a job outcome before the job is released back to the queue.
BOOKKEEPING_ATTEMPTS = 3
BOOKKEEPING_RETRY_DELAY = 0.05


class ReconciliationWorker:
    """Claims jobs in enqueue order and classifies their outcome."""

    def __init__(
        self,
        queue: JobQueue,
        executor: ReconciliationExecutor,
        config: Optional[QueueConfig] = None,
        limiter: Optional[AsyncLimiter] = None,
    ):
        self.queue = queue
        self.executor = executor
        self.config = config or queue.config
        self.limiter = limiter or AsyncLimiter(
            self.config.rate_limit_max_jobs, self.config.rate_limit_period_seconds
        )
        self._wake = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def wake(self) -> None:
        """Skip the rest of the current poll interval (called after enqueue)."""
        self._wake.set()

    def backoff_seconds(self, attempts_made: int) -> float:
        """Delay before the next attempt, doubling with each attempt made."""
        return self.config.backoff_base_ms * 2 ** max(0, attempts_made - 1) / 1000.0

    # --- Queue I/O ---

    async def _queue_call(self, func: Callable[..., T], *args) -> T:
        name = getattr(func, "__name__", "queue call")
        timeout = self.config.storage_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StorageError(f"{name} timed out after {timeout}s") from e
        except sqlite3.Error as e:
            raise StorageError(f"{name} failed: {e}") from e

    async def _record_outcome(
        self, job: JobRecord, func: Callable[..., JobRecord], *args
    ) -> JobRecord:
        """Write a job's outcome, retrying briefly; releases the job if the write never lands."""
        for attempt in range(1, BOOKKEEPING_ATTEMPTS + 1):
            try:
                return await self._queue_call(func, job.id, *args)
            except StorageError as e:
                if attempt == BOOKKEEPING_ATTEMPTS:
                    logger.error(
                        "Could not record outcome of job %s: %s; releasing it", job.id, e
                    )
                    await self._queue_call(self.queue.release, job.id)
                    raise
                logger.warning(
                    "Recording outcome of job %s failed (attempt %d/%d): %s",
                    job.id, attempt, BOOKKEEPING_ATTEMPTS, e,
                )
                await asyncio.sleep(BOOKKEEPING_RETRY_DELAY * attempt)

    # --- One job ---

    async def run_once(self) -> Optional[JobRecord]:
        """Process the head job if it is due. Returns the finished record."""
        if await self._queue_call(self.queue.peek_due) is None:
            return None
        async with self.limiter:
            job = await self._queue_call(self.queue.claim_next)
            if job is None:
                return None
            record = await self._process(job)
        await self._queue_call(self.queue.prune)
        return record

    async def run_until_idle(self) -> int:
        """Process due jobs until none is left to run now."""
        processed = 0
        while await self.run_once() is not None:
            processed += 1
        return processed

    async def _process(self, job: JobRecord) -> JobRecord:
        logger.info(
            "Starting %s job %s (attempt %d/%d)",
            job.payload.kind, job.id, job.attempts_made, job.max_attempts,
        )

        def report_progress(progress: int) -> None:
            self.queue.update_progress(job.id, progress)

        try:
            result = await self.executor.execute(job, report_progress)
        except TrackmuxError as e:
            return await self._handle_failure(job, e, e.stage, e.retryable)
        except Exception as e:
            logger.exception("Job %s raised an unexpected error", job.id)
            return await self._handle_failure(job, e, "worker", True)

        logger.info("Completed job %s: %s", job.id, result.message)
        return await self._record_outcome(
            job, self.queue.complete, result.model_dump(mode="json")
        )

    async def _handle_failure(
        self, job: JobRecord, error: Exception, stage: str, retryable: bool
    ) -> JobRecord:
        message = str(error)
        if retryable and job.attempts_made < job.max_attempts:
            delay = self.backoff_seconds(job.attempts_made)
            logger.warning(
                "Job %s failed at %s (attempt %d/%d): %s; retrying in %.1fs",
                job.id, stage, job.attempts_made, job.max_attempts, message, delay,
            )
            return await self._record_outcome(job, self.queue.schedule_retry, message, delay)

        if retryable:
            logger.error(
                "Job %s failed at %s after %d attempts: %s",
                job.id, stage, job.attempts_made, message,
            )
        else:
            logger.error("Job %s failed at %s (not retryable): %s", job.id, stage, message)
        result = {
            "status": "failed",
            "stage": stage,
            "error": message,
            "attempts_made": job.attempts_made,
        }
        return await self._record_outcome(job, self.queue.fail, message, result)

    # --- Loop ---

    async def _idle_timeout(self) -> float:
        timeout = self.config.poll_interval_seconds
        due_at = await self._queue_call(self.queue.next_due_at)
        if due_at is not None:
            until_due = (due_at - datetime.utcnow()).total_seconds()
            timeout = min(timeout, max(0.0, until_due))
        return timeout

    async def run(self) -> None:
        """Serve the queue until stop() is called."""
        recovered = await self._queue_call(self.queue.recover_stalled)
        if recovered:
            logger.warning("Recovered %d stalled jobs", len(recovered))
        logger.info("Reconciliation worker started")

        while not self._stopping:
            self._wake.clear()
            try:
                if await self.run_once() is not None:
                    continue
                timeout = await self._idle_timeout()
            except Exception:
                logger.exception("Worker iteration failed")
                timeout = self.config.poll_interval_seconds
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=max(timeout, 0.01))
            except asyncio.TimeoutError:
                continue

        logger.info("Reconciliation worker stopped")

    def start(self) -> asyncio.Task:
        if not self.running:
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="reconciliation-worker")
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
