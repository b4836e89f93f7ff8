"""Tests for the durable job queue."""

from datetime import datetime, timedelta

import pytest

from trackmux.errors import JobNotCancellableError, JobNotFoundError
from trackmux.jobs.queue import JobQueue
from trackmux.models.config import QueueConfig
from trackmux.models.jobs import (
    JobStatus,
    ResyncPayload,
    UpdateTrackingsPayload,
)
from trackmux.models.tracking import TrackingRequest


def _make_payload(actor_id: int = 100, group_id: str = "g1") -> UpdateTrackingsPayload:
    return UpdateTrackingsPayload(
        add_users=[TrackingRequest(actor_id=actor_id, group_id=group_id)],
    )


class TestEnqueueAndStatus:
    def setup_method(self):
        self.queue = JobQueue(db_path=":memory:")

    def test_enqueue_creates_waiting_job(self):
        job = self.queue.enqueue(_make_payload())
        assert job.id.startswith("job_")
        assert job.status == JobStatus.WAITING
        assert job.attempts_made == 0
        assert job.max_attempts == 3

    def test_payload_round_trips_kind(self):
        job = self.queue.enqueue(ResyncPayload(reason="manual"))
        loaded = self.queue.get(job.id)
        assert isinstance(loaded.payload, ResyncPayload)
        assert loaded.payload.reason == "manual"

    def test_position_among_waiting(self):
        first = self.queue.enqueue(_make_payload(1))
        second = self.queue.enqueue(_make_payload(2))

        assert self.queue.status(first.id).position == 1
        assert self.queue.status(second.id).position == 2

        self.queue.claim_next()
        assert self.queue.status(first.id).position is None
        assert self.queue.status(second.id).position == 1

    def test_position_counts_delayed_jobs_ahead(self):
        first = self.queue.enqueue(_make_payload(1))
        self.queue.claim_next()
        self.queue.schedule_retry(first.id, "boom", delay_seconds=60)
        second = self.queue.enqueue(_make_payload(2))

        assert self.queue.claim_next() is None
        assert self.queue.status(first.id).position is None
        assert self.queue.status(second.id).position == 2

    def test_unknown_job(self):
        with pytest.raises(JobNotFoundError):
            self.queue.status("job_missing")

    def test_has_pending(self):
        assert self.queue.has_pending("resync") is False
        self.queue.enqueue(ResyncPayload())
        assert self.queue.has_pending("resync") is True
        assert self.queue.has_pending("update_trackings") is False


class TestCancel:
    def setup_method(self):
        self.queue = JobQueue(db_path=":memory:")

    def test_cancel_waiting(self):
        job = self.queue.enqueue(_make_payload())
        cancelled = self.queue.cancel(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert self.queue.claim_next() is None

    def test_cancel_active_rejected(self):
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        with pytest.raises(JobNotCancellableError) as exc_info:
            self.queue.cancel(job.id)
        assert exc_info.value.status == "active"

    def test_cancel_completed_rejected(self):
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        self.queue.complete(job.id, {"status": "success"})
        with pytest.raises(JobNotCancellableError) as exc_info:
            self.queue.cancel(job.id)
        assert exc_info.value.status == "completed"

    def test_cancel_unknown(self):
        with pytest.raises(JobNotFoundError):
            self.queue.cancel("job_missing")


class TestClaimOrder:
    def setup_method(self):
        self.queue = JobQueue(db_path=":memory:")

    def test_claims_in_enqueue_order(self):
        first = self.queue.enqueue(_make_payload(1))
        second = self.queue.enqueue(_make_payload(2))

        claimed = self.queue.claim_next()
        assert claimed.id == first.id
        assert claimed.status == JobStatus.ACTIVE
        assert claimed.attempts_made == 1

        self.queue.complete(first.id, {"status": "success"})
        assert self.queue.claim_next().id == second.id

    def test_delayed_head_blocks_later_jobs(self):
        first = self.queue.enqueue(_make_payload(1))
        self.queue.enqueue(_make_payload(2))
        self.queue.claim_next()
        self.queue.schedule_retry(first.id, "boom", delay_seconds=60)

        assert self.queue.claim_next() is None
        later = datetime.utcnow() + timedelta(seconds=61)
        retried = self.queue.claim_next(now=later)
        assert retried.id == first.id
        assert retried.attempts_made == 2

    def test_delayed_status_view(self):
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        self.queue.schedule_retry(job.id, "provider down", delay_seconds=30)

        view = self.queue.status(job.id)
        assert view.status == JobStatus.DELAYED
        assert view.delay_reason == "Retry backoff"
        assert view.process_at is not None
        assert view.attempts_made == 1
        assert view.attempts_remaining == 2
        assert view.error == "provider down"

    def test_next_due_at(self):
        assert self.queue.next_due_at() is None
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        self.queue.schedule_retry(job.id, "boom", delay_seconds=30)
        assert self.queue.next_due_at() > datetime.utcnow()


class TestProgressAndFailure:
    def setup_method(self):
        self.queue = JobQueue(db_path=":memory:")

    def test_progress_never_decreases(self):
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        self.queue.update_progress(job.id, 60)
        self.queue.update_progress(job.id, 20)
        assert self.queue.get(job.id).progress == 60

    def test_complete_sets_full_progress(self):
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        done = self.queue.complete(job.id, {"status": "success", "message": "ok"})
        assert done.progress == 100
        assert done.result["message"] == "ok"
        assert done.finished_at is not None

    def test_fail_keeps_error(self):
        job = self.queue.enqueue(_make_payload())
        self.queue.claim_next()
        failed = self.queue.fail(job.id, "gone", {"status": "failed", "stage": "provider"})

        view = self.queue.status(job.id)
        assert failed.status == JobStatus.FAILED
        assert view.error == "gone"
        assert view.result["stage"] == "provider"


class TestRecovery:
    def test_stalled_job_returns_to_waiting(self):
        queue = JobQueue(db_path=":memory:")
        job = queue.enqueue(_make_payload())
        queue.claim_next()

        assert queue.recover_stalled() == [job.id]
        recovered = queue.get(job.id)
        assert recovered.status == JobStatus.WAITING
        assert recovered.stalled_count == 1

    def test_repeatedly_stalled_job_fails(self):
        queue = JobQueue(db_path=":memory:", config=QueueConfig(max_stalled_count=0))
        job = queue.enqueue(_make_payload())
        queue.claim_next()

        queue.recover_stalled()
        assert queue.get(job.id).status == JobStatus.FAILED

    def test_release_returns_active_job_to_head(self):
        queue = JobQueue(db_path=":memory:")
        first = queue.enqueue(_make_payload(1))
        queue.enqueue(_make_payload(2))
        queue.claim_next()

        queue.release(first.id)

        released = queue.get(first.id)
        assert released.status == JobStatus.WAITING
        assert released.attempts_made == 1
        assert queue.status(first.id).position == 1
        assert queue.claim_next().id == first.id

    def test_release_ignores_finished_jobs(self):
        queue = JobQueue(db_path=":memory:")
        job = queue.enqueue(_make_payload())
        queue.claim_next()
        queue.complete(job.id, {"status": "success"})

        queue.release(job.id)
        assert queue.get(job.id).status == JobStatus.COMPLETED

    def test_recovery_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "jobs.db")
        queue = JobQueue(db_path=db_path)
        job = queue.enqueue(_make_payload())
        queue.claim_next()
        queue.close()

        reopened = JobQueue(db_path=db_path)
        reopened.recover_stalled()
        assert reopened.claim_next().id == job.id


class TestPrune:
    def test_keeps_newest_completed(self):
        queue = JobQueue(db_path=":memory:", config=QueueConfig(keep_completed_count=2))
        ids = []
        for actor_id in range(4):
            job = queue.enqueue(_make_payload(actor_id))
            queue.claim_next()
            queue.complete(job.id, {"status": "success"})
            ids.append(job.id)

        assert queue.prune() == 2
        with pytest.raises(JobNotFoundError):
            queue.get(ids[0])
        assert queue.get(ids[3]).status == JobStatus.COMPLETED

    def test_drops_old_failed(self):
        queue = JobQueue(db_path=":memory:")
        job = queue.enqueue(_make_payload())
        queue.claim_next()
        queue.fail(job.id, "boom", {"status": "failed"})

        assert queue.prune() == 0
        assert queue.prune(now=datetime.utcnow() + timedelta(days=8)) == 1

    def test_pending_jobs_are_never_pruned(self):
        queue = JobQueue(db_path=":memory:", config=QueueConfig(keep_completed_count=0))
        job = queue.enqueue(_make_payload())
        queue.prune(now=datetime.utcnow() + timedelta(days=30))
        assert queue.get(job.id).status == JobStatus.WAITING

    def test_counts(self):
        queue = JobQueue(db_path=":memory:")
        queue.enqueue(_make_payload(1))
        queue.enqueue(_make_payload(2))
        queue.claim_next()
        counts = queue.counts()
        assert counts["waiting"] == 1
        assert counts["active"] == 1
        assert counts["failed"] == 0
