"""Reconciliation job records, payload kinds and status views."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from trackmux.models.tracking import ActorId, SkippedEntry, TrackingRequest


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"        # Waiting out a retry backoff
    COMPLETED = "completed"
    FAILED = "failed"          # Terminal: non-retryable or attempts exhausted
    CANCELLED = "cancelled"


PENDING_STATUSES = (JobStatus.WAITING, JobStatus.DELAYED)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class UpdateTrackingsPayload(BaseModel):
    """A batch of add/remove requests from the dispatcher."""

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["update_trackings"] = "update_trackings"
    add_users: List[TrackingRequest] = Field(default_factory=list, alias="addUsers")
    remove_users: List[TrackingRequest] = Field(default_factory=list, alias="removeUsers")

    @property
    def is_empty(self) -> bool:
        return not self.add_users and not self.remove_users

    def touched_actor_ids(self) -> Set[ActorId]:
        return {r.actor_id for r in self.add_users} | {r.actor_id for r in self.remove_users}


class ResyncPayload(BaseModel):
    """Recompute the whole filter from the relation table."""

    kind: Literal["resync"] = "resync"
    reason: str = "manual"


JobPayload = Annotated[
    Union[UpdateTrackingsPayload, ResyncPayload],
    Field(discriminator="kind"),
]


class JobRecord(BaseModel):
    """A durable job as stored by the queue."""

    id: str
    payload: JobPayload
    status: JobStatus = JobStatus.WAITING
    progress: int = Field(ge=0, le=100, default=0)
    attempts_made: int = 0
    max_attempts: int = 3
    stalled_count: int = 0
    result: Optional[dict] = None
    error: Optional[str] = None
    process_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobResult(BaseModel):
    """Summary stored as a job's result, for both success and terminal failure."""

    status: Literal["success", "failed"]
    message: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[str] = None             # "validation" | "provider" | "storage"
    filter_changed: bool = False
    filter_size: Optional[int] = None
    added_to_filter: List[ActorId] = []
    removed_from_filter: List[ActorId] = []
    relations_added: int = 0
    relations_removed: int = 0
    skipped: List[SkippedEntry] = []


class JobStatusView(BaseModel):
    """What the status API returns for one job."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    kind: str
    status: JobStatus
    progress: int
    result: Optional[dict] = None
    error: Optional[str] = None
    attempts_made: Optional[int] = Field(default=None, alias="attemptsMade")
    attempts_remaining: Optional[int] = Field(default=None, alias="attemptsRemaining")
    position: Optional[int] = None
    delay_reason: Optional[str] = Field(default=None, alias="delayReason")
    process_at: Optional[datetime] = Field(default=None, alias="processAt")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
