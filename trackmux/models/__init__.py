"""trackmux data models."""

from trackmux.models.config import (
    ApiConfig,
    EngineConfig,
    ProviderConfig,
    QueueConfig,
    ThresholdConfig,
)
from trackmux.models.jobs import (
    JobPayload,
    JobRecord,
    JobResult,
    JobStatus,
    JobStatusView,
    ResyncPayload,
    UpdateTrackingsPayload,
)
from trackmux.models.reconciler import ReconcileOutcome
from trackmux.models.subscription import (
    ProviderSubscription,
    SubscriptionSnapshot,
    Thresholds,
)
from trackmux.models.tracking import (
    ActorId,
    Group,
    SkippedEntry,
    TrackingRequest,
    WatchRelation,
)

__all__ = [
    "ActorId",
    "ApiConfig",
    "EngineConfig",
    "Group",
    "JobPayload",
    "JobRecord",
    "JobResult",
    "JobStatus",
    "JobStatusView",
    "ProviderConfig",
    "ProviderSubscription",
    "QueueConfig",
    "ReconcileOutcome",
    "ResyncPayload",
    "SkippedEntry",
    "SubscriptionSnapshot",
    "ThresholdConfig",
    "Thresholds",
    "TrackingRequest",
    "UpdateTrackingsPayload",
    "WatchRelation",
]
