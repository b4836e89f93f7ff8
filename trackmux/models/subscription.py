"""Subscription State: the local mirror of the upstream provider's single filter."""

from datetime import datetime
from typing import Optional, Set

from pydantic import BaseModel, Field

from trackmux.models.tracking import ActorId


class Thresholds(BaseModel):
    """Global filter thresholds. Passed through unchanged by the engine."""

    min_score: Optional[float] = None       # Minimum trader score, 0..1
    min_amount_usd: Optional[float] = None  # Minimum trade size in USD


class ProviderSubscription(BaseModel):
    """What the provider reports back after a create or update."""

    handle: str
    filter_set: Set[ActorId] = Field(default_factory=set)
    target_url: Optional[str] = None
    name: Optional[str] = None


class SubscriptionSnapshot(BaseModel):
    """The persisted singleton subscription record."""

    handle: str
    filter_set: Set[ActorId] = Field(default_factory=set)
    thresholds: Thresholds = Field(default_factory=Thresholds)
    target_url: Optional[str] = None
    name: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_provider(
        cls, subscription: ProviderSubscription, thresholds: Thresholds
    ) -> "SubscriptionSnapshot":
        return cls(
            handle=subscription.handle,
            filter_set=set(subscription.filter_set),
            thresholds=thresholds,
            target_url=subscription.target_url,
            name=subscription.name,
        )
