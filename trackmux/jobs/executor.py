"""
Job Executor: runs one reconciliation job against the shared subscription.

Behavioral Contract:
- State (subscription + watcher snapshot) is read fresh at the start of
  every attempt, never cached across attempts or jobs.
- Unresolvable group references are skipped and reported, not fatal.
- The provider is called before any local write. Subscription state is
  persisted only after the provider call succeeds; relations are written last.
- With no recorded subscription, an upstream one carrying the configured
  name is adopted and updated instead of creating a second one.
- A failed provider call leaves local state untouched, so the whole job can
  be retried from the top.
- Storage calls and provider calls carry timeouts; a timeout is a retryable
  failure of the corresponding stage.
- Never catches errors for retry decisions; that is the worker's job.
"""

import asyncio
import logging
import sqlite3
from typing import Awaitable, Callable, List, Optional, Set, Tuple, TypeVar, assert_never

from trackmux.errors import BatchValidationError, ProviderError, StorageError
from trackmux.models.jobs import (
    JobRecord,
    JobResult,
    ResyncPayload,
    UpdateTrackingsPayload,
)
from trackmux.models.reconciler import ReconcileOutcome
from trackmux.models.subscription import SubscriptionSnapshot, Thresholds
from trackmux.models.tracking import ActorId, SkippedEntry, TrackingRequest, WatchRelation
from trackmux.provider.adapter import ProviderAdapter
from trackmux.reconciler.engine import WatchSnapshot, reconcile, reconcile_full
from trackmux.subscription.store import SubscriptionStore
from trackmux.tracking.store import TrackingStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressReporter = Callable[[int], None]

# Progress checkpoints reported while a job runs.
PROGRESS_VALIDATED = 5
PROGRESS_STATE_LOADED = 20
PROGRESS_PROVIDER_UPDATED = 60
PROGRESS_STATE_PERSISTED = 80
PROGRESS_RELATIONS_COMMITTED = 90


class ReconciliationExecutor:
    """Executes update and resync jobs. Must be driven by a single worker."""

    def __init__(
        self,
        tracking_store: TrackingStore,
        subscription_store: SubscriptionStore,
        provider: ProviderAdapter,
        default_thresholds: Optional[Thresholds] = None,
        storage_timeout: float = 10.0,
        provider_timeout: float = 30.0,
    ):
        self.tracking_store = tracking_store
        self.subscription_store = subscription_store
        self.provider = provider
        self.default_thresholds = default_thresholds or Thresholds()
        self.storage_timeout = storage_timeout
        self.provider_timeout = provider_timeout

    async def execute(self, job: JobRecord, report_progress: ProgressReporter) -> JobResult:
        """Run one attempt of a job and return its result summary."""
        payload = job.payload
        if isinstance(payload, UpdateTrackingsPayload):
            return await self._run_update(job, payload, report_progress)
        elif isinstance(payload, ResyncPayload):
            return await self._run_resync(job, payload, report_progress)
        else:
            assert_never(payload)

    # --- I/O helpers ---

    async def _storage(self, func: Callable[..., T], *args) -> T:
        name = getattr(func, "__name__", "storage call")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self.storage_timeout
            )
        except asyncio.TimeoutError as e:
            raise StorageError(f"{name} timed out after {self.storage_timeout}s") from e
        except sqlite3.Error as e:
            raise StorageError(f"{name} failed: {e}") from e

    async def _provider_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Provider {operation} timed out after {self.provider_timeout}s"
            ) from e

    async def _report(self, report_progress: ProgressReporter, value: int) -> None:
        await self._storage(report_progress, value)

    # --- Shared steps ---

    def _resolve(
        self,
        requests: List[TrackingRequest],
        operation: str,
    ) -> Tuple[List[WatchRelation], List[SkippedEntry]]:
        relations: List[WatchRelation] = []
        skipped: List[SkippedEntry] = []
        for request in requests:
            group_id = self.tracking_store.resolve_group(request.group_id)
            if group_id is None:
                logger.warning(
                    "Skipping %s of actor %s: group %r not found",
                    operation, request.actor_id, request.group_id,
                )
                skipped.append(SkippedEntry(
                    operation=operation,
                    actor_id=request.actor_id,
                    group_ref=request.group_id,
                    reason="group_not_found",
                ))
                continue
            relations.append(WatchRelation(
                group_id=group_id,
                actor_id=request.actor_id,
                added_by=request.added_by,
            ))
        return relations, skipped

    async def _push_filter(
        self,
        state: Optional[SubscriptionSnapshot],
        required: Set[ActorId],
    ) -> SubscriptionSnapshot:
        """Send the full required filter upstream; returns the snapshot to persist."""
        if state is None:
            thresholds = self.default_thresholds
            # A create whose persist failed must be adopted, not repeated.
            existing = await self._provider_call("find", self.provider.find_existing())
            if existing is not None:
                logger.warning(
                    "Adopting unrecorded provider subscription %s", existing.handle
                )
                subscription = await self._provider_call(
                    "update", self.provider.update(existing.handle, required, thresholds)
                )
            else:
                logger.info("No subscription yet; creating one with %d actors", len(required))
                subscription = await self._provider_call(
                    "create", self.provider.create(required, thresholds)
                )
        else:
            thresholds = state.thresholds
            subscription = await self._provider_call(
                "update", self.provider.update(state.handle, required, thresholds)
            )

        snapshot = SubscriptionSnapshot.from_provider(subscription, thresholds)
        snapshot.filter_set = set(required)
        return snapshot

    def _apply_relations(self, outcome: ReconcileOutcome) -> Tuple[int, int]:
        added = self.tracking_store.add_relations(outcome.relations_to_add)
        removed = 0
        for group_id, actor_ids in outcome.removals_by_group().items():
            removed += self.tracking_store.remove_relations(group_id, actor_ids)
        return added, removed

    # --- Job kinds ---

    async def _run_update(
        self,
        job: JobRecord,
        payload: UpdateTrackingsPayload,
        report_progress: ProgressReporter,
    ) -> JobResult:
        if payload.is_empty:
            raise BatchValidationError("Batch has no add or remove entries")
        await self._report(report_progress, PROGRESS_VALIDATED)

        state = await self._storage(self.subscription_store.current)
        adds, skipped_adds = await self._storage(self._resolve, payload.add_users, "add")
        removes, skipped_removes = await self._storage(
            self._resolve, payload.remove_users, "remove"
        )
        touched = {r.actor_id for r in adds} | {r.actor_id for r in removes}
        watchers = await self._storage(self.tracking_store.snapshot, touched)
        await self._report(report_progress, PROGRESS_STATE_LOADED)

        current = state.filter_set if state else set()
        outcome = reconcile(current, WatchSnapshot(watchers), adds, removes)

        filter_size = len(current)
        if outcome.changed:
            snapshot = await self._push_filter(state, outcome.required_filter_set)
            await self._report(report_progress, PROGRESS_PROVIDER_UPDATED)
            await self._storage(self.subscription_store.persist, snapshot)
            await self._report(report_progress, PROGRESS_STATE_PERSISTED)
            filter_size = len(snapshot.filter_set)
        else:
            logger.info("Job %s: filter unchanged, skipping provider update", job.id)

        relations_added, relations_removed = await self._storage(
            self._apply_relations, outcome
        )
        await self._report(report_progress, PROGRESS_RELATIONS_COMMITTED)

        skipped = skipped_adds + skipped_removes
        logger.info(
            "Job %s: +%d/-%d relations, filter %s (%d actors), %d skipped",
            job.id, relations_added, relations_removed,
            "changed" if outcome.changed else "unchanged", filter_size, len(skipped),
        )
        return JobResult(
            status="success",
            message=(
                f"Processed {len(payload.add_users)} adds and "
                f"{len(payload.remove_users)} removes"
            ),
            filter_changed=outcome.changed,
            filter_size=filter_size,
            added_to_filter=sorted(outcome.added_to_filter),
            removed_from_filter=sorted(outcome.removed_from_filter),
            relations_added=relations_added,
            relations_removed=relations_removed,
            skipped=skipped,
        )

    async def _run_resync(
        self,
        job: JobRecord,
        payload: ResyncPayload,
        report_progress: ProgressReporter,
    ) -> JobResult:
        state = await self._storage(self.subscription_store.current)
        watched = await self._storage(self.tracking_store.distinct_watched_actors)
        await self._report(report_progress, PROGRESS_STATE_LOADED)

        current = state.filter_set if state else set()
        outcome = reconcile_full(current, watched)

        filter_size = len(current)
        if outcome.changed:
            logger.info(
                "Resync %s (%s): filter drifted (+%d/-%d)",
                job.id, payload.reason,
                len(outcome.added_to_filter), len(outcome.removed_from_filter),
            )
            snapshot = await self._push_filter(state, outcome.required_filter_set)
            await self._report(report_progress, PROGRESS_PROVIDER_UPDATED)
            await self._storage(self.subscription_store.persist, snapshot)
            await self._report(report_progress, PROGRESS_STATE_PERSISTED)
            filter_size = len(snapshot.filter_set)

        return JobResult(
            status="success",
            message=f"Resync ({payload.reason}) checked {len(watched)} watched actors",
            filter_changed=outcome.changed,
            filter_size=filter_size,
            added_to_filter=sorted(outcome.added_to_filter),
            removed_from_filter=sorted(outcome.removed_from_filter),
        )
