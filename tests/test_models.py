"""Tests for trackmux data models."""

from datetime import datetime

import pytest
from pydantic import TypeAdapter, ValidationError

from trackmux.errors import (
    BatchValidationError,
    FilterTooLargeError,
    ProviderError,
    StorageError,
)
from trackmux.models import (
    JobPayload,
    JobRecord,
    JobStatus,
    JobStatusView,
    ProviderSubscription,
    ResyncPayload,
    SubscriptionSnapshot,
    Thresholds,
    TrackingRequest,
    UpdateTrackingsPayload,
)


class TestTrackingRequest:
    def test_accepts_wire_names(self):
        request = TrackingRequest.model_validate({"actorId": 5, "groupId": "g1", "addedBy": "u"})
        assert request.actor_id == 5
        assert request.group_id == "g1"
        assert request.added_by == "u"

    def test_rejects_empty_group(self):
        with pytest.raises(ValidationError):
            TrackingRequest(actor_id=5, group_id="")


class TestJobPayload:
    def test_discriminates_on_kind(self):
        adapter = TypeAdapter(JobPayload)
        update = adapter.validate_python({
            "kind": "update_trackings",
            "addUsers": [{"actorId": 1, "groupId": "g1"}],
        })
        resync = adapter.validate_python({"kind": "resync", "reason": "cron"})

        assert isinstance(update, UpdateTrackingsPayload)
        assert update.touched_actor_ids() == {1}
        assert isinstance(resync, ResyncPayload)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            TypeAdapter(JobPayload).validate_python({"kind": "delete_everything"})

    def test_is_empty(self):
        assert UpdateTrackingsPayload().is_empty
        payload = UpdateTrackingsPayload(remove_users=[TrackingRequest(actor_id=1, group_id="g")])
        assert not payload.is_empty


class TestJobRecord:
    def test_attempts_remaining_and_terminal(self):
        now = datetime.utcnow()
        record = JobRecord(
            id="job_1",
            payload=ResyncPayload(),
            status=JobStatus.FAILED,
            attempts_made=3,
            max_attempts=3,
            created_at=now,
            updated_at=now,
        )
        assert record.attempts_remaining == 0
        assert record.is_terminal

    def test_progress_bounds(self):
        now = datetime.utcnow()
        with pytest.raises(ValidationError):
            JobRecord(
                id="job_1", payload=ResyncPayload(), progress=101,
                created_at=now, updated_at=now,
            )

    def test_status_view_uses_wire_names(self):
        now = datetime.utcnow()
        view = JobStatusView(
            job_id="job_1", kind="resync", status=JobStatus.WAITING, progress=0,
            position=2, created_at=now, updated_at=now,
        )
        data = view.model_dump(mode="json", by_alias=True, exclude_none=True)
        assert data["jobId"] == "job_1"
        assert data["position"] == 2
        assert "attemptsMade" not in data


class TestSubscriptionSnapshot:
    def test_from_provider_keeps_thresholds(self):
        subscription = ProviderSubscription(handle="wh_1", filter_set={1, 2}, name="hook")
        snapshot = SubscriptionSnapshot.from_provider(subscription, Thresholds(min_score=0.3))
        assert snapshot.handle == "wh_1"
        assert snapshot.filter_set == {1, 2}
        assert snapshot.thresholds.min_score == 0.3


class TestErrors:
    def test_retry_classification(self):
        assert ProviderError("x").retryable is True
        assert StorageError("x").retryable is True
        assert BatchValidationError("x").retryable is False
        assert FilterTooLargeError(10, 5).retryable is False

    def test_stages(self):
        assert ProviderError("x").stage == "provider"
        assert FilterTooLargeError(10).stage == "provider"
        assert StorageError("x").stage == "storage"
        assert BatchValidationError("x").stage == "validation"

    def test_filter_too_large_message(self):
        assert "limit of 5" in str(FilterTooLargeError(10, 5))
