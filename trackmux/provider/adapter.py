"""
Provider Adapter boundary.

The engine calls the upstream subscription service through this interface
only. Any non-success outcome must surface as a ProviderError; a partial
success is never reported.
"""

from typing import Iterable, List, Optional, Protocol, Set
from uuid import uuid4

from trackmux.errors import FilterTooLargeError, ProviderError
from trackmux.models.subscription import ProviderSubscription, Thresholds
from trackmux.models.tracking import ActorId


class ProviderAdapter(Protocol):
    """Create, read and update the single upstream subscription."""

    async def create(
        self, filter_set: Set[ActorId], thresholds: Thresholds
    ) -> ProviderSubscription:
        ...

    async def update(
        self, handle: str, filter_set: Set[ActorId], thresholds: Thresholds
    ) -> ProviderSubscription:
        ...

    async def lookup(self, handle: str) -> Optional[ProviderSubscription]:
        ...

    async def find_existing(self) -> Optional[ProviderSubscription]:
        """The subscription this deployment created earlier, matched by its configured name."""
        ...


def check_filter_size(filter_set: Iterable[ActorId], limit: Optional[int]) -> None:
    """Reject filters above the provider's size limit before any network call."""
    size = len(set(filter_set))
    if limit is not None and size > limit:
        raise FilterTooLargeError(size, limit)


class InMemoryProvider:
    """
    In-process provider for local runs and tests.

    Records every call. `fail_next(n)` makes the next n create/update calls
    raise a retryable ProviderError.
    """

    def __init__(self, max_filter_size: Optional[int] = None, name: str = "trackmux"):
        self.max_filter_size = max_filter_size
        self.name = name
        self.subscriptions: dict = {}
        self.create_calls: List[Set[ActorId]] = []
        self.update_calls: List[Set[ActorId]] = []
        self._failures_pending = 0

    def fail_next(self, count: int = 1) -> None:
        self._failures_pending = count

    def _maybe_fail(self, operation: str) -> None:
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise ProviderError(f"Injected {operation} failure", status_code=503)

    async def create(
        self, filter_set: Set[ActorId], thresholds: Thresholds
    ) -> ProviderSubscription:
        check_filter_size(filter_set, self.max_filter_size)
        self._maybe_fail("create")
        self.create_calls.append(set(filter_set))
        subscription = ProviderSubscription(
            handle=f"sub_{uuid4().hex[:12]}",
            filter_set=set(filter_set),
            name=self.name,
        )
        self.subscriptions[subscription.handle] = subscription
        return subscription

    async def update(
        self, handle: str, filter_set: Set[ActorId], thresholds: Thresholds
    ) -> ProviderSubscription:
        check_filter_size(filter_set, self.max_filter_size)
        self._maybe_fail("update")
        if handle not in self.subscriptions:
            raise ProviderError(f"Subscription {handle} not found", status_code=404)
        self.update_calls.append(set(filter_set))
        subscription = self.subscriptions[handle].model_copy(
            update={"filter_set": set(filter_set)}
        )
        self.subscriptions[handle] = subscription
        return subscription

    async def lookup(self, handle: str) -> Optional[ProviderSubscription]:
        return self.subscriptions.get(handle)

    async def find_existing(self) -> Optional[ProviderSubscription]:
        for subscription in self.subscriptions.values():
            if subscription.name == self.name:
                return subscription
        return None
