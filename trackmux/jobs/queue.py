"""
Durable job queue for reconciliation jobs.

Behavioral Contract:
- Jobs are stored in SQLite and survive restarts.
- Jobs are claimed strictly in enqueue order. A job waiting out a retry
  backoff holds the head of the queue until it is due, so later batches
  never overtake an earlier one.
- Only pending jobs (waiting or delayed) can be cancelled.
- Progress stored for a job never decreases.
- Jobs left active by a crashed process are handed out again (at-least-once).
- Finished jobs are pruned by count and age.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import TypeAdapter

from trackmux.errors import JobNotCancellableError, JobNotFoundError
from trackmux.models.config import QueueConfig
from trackmux.models.jobs import (
    PENDING_STATUSES,
    JobPayload,
    JobRecord,
    JobStatus,
    JobStatusView,
)

logger = logging.getLogger(__name__)

_payload_adapter = TypeAdapter(JobPayload)


class JobQueue:
    """SQLite-backed FIFO queue with retry scheduling and retention."""

    def __init__(self, db_path: str = ":memory:", config: Optional[QueueConfig] = None):
        self.db_path = db_path
        self.config = config or QueueConfig()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    kind TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    stalled_count INTEGER NOT NULL DEFAULT 0,
                    result_json TEXT,
                    error TEXT,
                    process_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    finished_at TEXT
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)
            """)
            self._conn.commit()

    def _deserialize(self, row: sqlite3.Row) -> JobRecord:
        return JobRecord(
            id=row["id"],
            payload=_payload_adapter.validate_python(json.loads(row["payload_json"])),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            stalled_count=row["stalled_count"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            error=row["error"],
            process_at=datetime.fromisoformat(row["process_at"]) if row["process_at"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
        )

    def _row(self, job_id: str) -> sqlite3.Row:
        row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    # --- Producer side ---

    def enqueue(self, payload: JobPayload) -> JobRecord:
        """Store a new waiting job. Never blocks on execution."""
        job_id = f"job_{uuid4().hex[:12]}"
        now = datetime.utcnow().isoformat()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO jobs (
                    id, kind, payload_json, status, max_attempts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    payload.kind,
                    payload.model_dump_json(),
                    JobStatus.WAITING.value,
                    self.config.max_attempts,
                    now,
                    now,
                ),
            )
            self._conn.commit()
        logger.info("Enqueued %s job %s", payload.kind, job_id)
        return self.get(job_id)

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            return self._deserialize(self._row(job_id))

    def status(self, job_id: str) -> JobStatusView:
        """Build the status view for a job, including its queue position."""
        with self._lock:
            row = self._row(job_id)
            record = self._deserialize(row)
            position = None
            if record.status == JobStatus.WAITING:
                # Delayed jobs ahead still hold the line.
                ahead = self._conn.execute(
                    "SELECT COUNT(*) AS cnt FROM jobs WHERE status IN (?, ?) AND seq < ?",
                    (JobStatus.WAITING.value, JobStatus.DELAYED.value, row["seq"]),
                ).fetchone()
                position = ahead["cnt"] + 1

        view = JobStatusView(
            job_id=record.id,
            kind=record.payload.kind,
            status=record.status,
            progress=record.progress,
            result=record.result,
            created_at=record.created_at,
            updated_at=record.updated_at,
            position=position,
        )
        if record.status in (JobStatus.FAILED, JobStatus.DELAYED, JobStatus.ACTIVE):
            view.attempts_made = record.attempts_made
            view.attempts_remaining = record.attempts_remaining
            view.error = record.error
        if record.status == JobStatus.DELAYED:
            view.delay_reason = "Retry backoff"
            view.process_at = record.process_at
        return view

    def has_pending(self, kind: str) -> bool:
        """Whether a job of this kind is waiting or delayed."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM jobs WHERE kind = ? AND status IN (?, ?) LIMIT 1",
                (kind, JobStatus.WAITING.value, JobStatus.DELAYED.value),
            ).fetchone()
        return row is not None

    def cancel(self, job_id: str) -> JobRecord:
        """Remove a pending job before execution."""
        now = datetime.utcnow().isoformat()
        with self._lock:
            row = self._row(job_id)
            status = JobStatus(row["status"])
            if status not in PENDING_STATUSES:
                raise JobNotCancellableError(job_id, status.value)
            self._conn.execute(
                """
                UPDATE jobs SET status = ?, error = ?, updated_at = ?, finished_at = ?
                WHERE id = ?
                """,
                (JobStatus.CANCELLED.value, "cancelled", now, now, job_id),
            )
            self._conn.commit()
        logger.info("Cancelled job %s", job_id)
        return self.get(job_id)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM jobs GROUP BY status"
            ).fetchall()
        counts = {s.value: 0 for s in JobStatus}
        for row in rows:
            counts[row["status"]] = row["cnt"]
        return counts

    # --- Worker side ---

    def _head(self) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM jobs WHERE status IN (?, ?) ORDER BY seq LIMIT 1",
            (JobStatus.WAITING.value, JobStatus.DELAYED.value),
        ).fetchone()

    def _is_due(self, row: sqlite3.Row, now: datetime) -> bool:
        if row["status"] == JobStatus.WAITING.value:
            return True
        return row["process_at"] is None or datetime.fromisoformat(row["process_at"]) <= now

    def peek_due(self, now: Optional[datetime] = None) -> Optional[JobRecord]:
        """The head job if it may run now, without claiming it."""
        now = now or datetime.utcnow()
        with self._lock:
            row = self._head()
            if row is None or not self._is_due(row, now):
                return None
            return self._deserialize(row)

    def next_due_at(self) -> Optional[datetime]:
        """When the head job becomes runnable (None when the queue is empty)."""
        with self._lock:
            row = self._head()
        if row is None:
            return None
        if row["status"] == JobStatus.WAITING.value or row["process_at"] is None:
            return datetime.utcnow()
        return datetime.fromisoformat(row["process_at"])

    def claim_next(self, now: Optional[datetime] = None) -> Optional[JobRecord]:
        """Move the head job to active and count the attempt."""
        now = now or datetime.utcnow()
        with self._lock:
            row = self._head()
            if row is None or not self._is_due(row, now):
                return None
            self._conn.execute(
                """
                UPDATE jobs SET status = ?, attempts_made = attempts_made + 1,
                    process_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.ACTIVE.value, now.isoformat(), row["id"]),
            )
            self._conn.commit()
            return self._deserialize(self._row(row["id"]))

    def update_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        with self._lock:
            self._conn.execute(
                "UPDATE jobs SET progress = MAX(progress, ?), updated_at = ? WHERE id = ?",
                (progress, datetime.utcnow().isoformat(), job_id),
            )
            self._conn.commit()

    def complete(self, job_id: str, result: dict) -> JobRecord:
        now = datetime.utcnow().isoformat()
        with self._lock:
            self._conn.execute(
                """
                UPDATE jobs SET status = ?, progress = 100, result_json = ?,
                    error = NULL, updated_at = ?, finished_at = ?
                WHERE id = ?
                """,
                (JobStatus.COMPLETED.value, json.dumps(result), now, now, job_id),
            )
            self._conn.commit()
        return self.get(job_id)

    def schedule_retry(self, job_id: str, error: str, delay_seconds: float) -> JobRecord:
        """Put an active job back in line after a backoff delay."""
        now = datetime.utcnow()
        process_at = now + timedelta(seconds=delay_seconds)
        with self._lock:
            self._conn.execute(
                """
                UPDATE jobs SET status = ?, error = ?, process_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    JobStatus.DELAYED.value,
                    error,
                    process_at.isoformat(),
                    now.isoformat(),
                    job_id,
                ),
            )
            self._conn.commit()
        return self.get(job_id)

    def fail(self, job_id: str, error: str, result: dict) -> JobRecord:
        """Mark a job failed for good, keeping its last error for inspection."""
        now = datetime.utcnow().isoformat()
        with self._lock:
            self._conn.execute(
                """
                UPDATE jobs SET status = ?, error = ?, result_json = ?,
                    updated_at = ?, finished_at = ?
                WHERE id = ?
                """,
                (JobStatus.FAILED.value, error, json.dumps(result), now, now, job_id),
            )
            self._conn.commit()
        return self.get(job_id)

    def release(self, job_id: str) -> None:
        """Return an active job to the head of the line without finishing it."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE jobs SET status = ?, process_at = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.WAITING.value,
                    datetime.utcnow().isoformat(),
                    job_id,
                    JobStatus.ACTIVE.value,
                ),
            )
            self._conn.commit()
        logger.warning("Released job %s back to the queue", job_id)

    def recover_stalled(self) -> List[str]:
        """Return jobs left active by a dead worker to the queue, or fail them."""
        now = datetime.utcnow().isoformat()
        recovered = []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY seq",
                (JobStatus.ACTIVE.value,),
            ).fetchall()
            for row in rows:
                stalled = row["stalled_count"] + 1
                exhausted = row["attempts_made"] >= row["max_attempts"]
                if stalled > self.config.max_stalled_count or exhausted:
                    error = f"job stalled {stalled} times"
                    result = {"status": "failed", "error": error, "stage": "worker"}
                    self._conn.execute(
                        """
                        UPDATE jobs SET status = ?, stalled_count = ?, error = ?,
                            result_json = ?, updated_at = ?, finished_at = ?
                        WHERE id = ?
                        """,
                        (JobStatus.FAILED.value, stalled, error, json.dumps(result),
                         now, now, row["id"]),
                    )
                    logger.warning("Failed stalled job %s: %s", row["id"], error)
                else:
                    self._conn.execute(
                        "UPDATE jobs SET status = ?, stalled_count = ?, updated_at = ? WHERE id = ?",
                        (JobStatus.WAITING.value, stalled, now, row["id"]),
                    )
                    logger.warning("Requeued stalled job %s", row["id"])
                recovered.append(row["id"])
            self._conn.commit()
        return recovered

    def prune(self, now: Optional[datetime] = None) -> int:
        """Apply the retention policy to finished jobs."""
        now = now or datetime.utcnow()
        policies = [
            (
                (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value),
                self.config.keep_completed_count,
                self.config.keep_completed_seconds,
            ),
            (
                (JobStatus.FAILED.value,),
                self.config.keep_failed_count,
                self.config.keep_failed_seconds,
            ),
        ]
        removed = 0
        with self._lock:
            for statuses, keep_count, keep_seconds in policies:
                placeholders = ",".join("?" for _ in statuses)
                cutoff = (now - timedelta(seconds=keep_seconds)).isoformat()
                cursor = self._conn.execute(
                    f"DELETE FROM jobs WHERE status IN ({placeholders}) AND finished_at < ?",
                    (*statuses, cutoff),
                )
                removed += cursor.rowcount
                cursor = self._conn.execute(
                    f"""
                    DELETE FROM jobs WHERE status IN ({placeholders}) AND seq NOT IN (
                        SELECT seq FROM jobs WHERE status IN ({placeholders})
                        ORDER BY seq DESC LIMIT ?
                    )
                    """,
                    (*statuses, *statuses, keep_count),
                )
                removed += cursor.rowcount
            self._conn.commit()
        if removed:
            logger.debug("Pruned %d finished jobs", removed)
        return removed

    def close(self) -> None:
        self._conn.close()
