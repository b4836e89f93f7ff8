"""Tracking models: groups, watched actors and the relations between them."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Upstream actor identity (a numeric account id on the activity network).
ActorId = int


class TrackingRequest(BaseModel):
    """One add or remove entry as sent by the dispatcher.

    `group_id` may be either the canonical group id or an alternate external
    reference (such as a conversation id); the executor resolves it.
    """

    model_config = ConfigDict(populate_by_name=True)

    actor_id: ActorId = Field(alias="actorId")
    group_id: str = Field(alias="groupId", min_length=1)
    added_by: Optional[str] = Field(default=None, alias="addedBy")


class WatchRelation(BaseModel):
    """The unit of demand: this group wants notifications about this actor."""

    group_id: str
    actor_id: ActorId
    added_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.group_id, self.actor_id)


class Group(BaseModel):
    """A consuming unit, known by a canonical id and optionally a conversation id."""

    id: str
    conversation_id: Optional[str] = None
    created_at: Optional[datetime] = None


class SkippedEntry(BaseModel):
    """A request dropped during a job because its references did not resolve."""

    operation: str                          # "add" | "remove"
    actor_id: ActorId
    group_ref: str
    reason: str
