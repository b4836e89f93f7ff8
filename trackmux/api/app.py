"""
trackmux API: FastAPI endpoints.

Exposes the engine over HTTP for:
- Enqueueing tracking batches and full resyncs
- Job status and cancellation
- Queue, subscription and relation inspection
- Group registration and deletion
- Signed inbound provider events
"""

import inspect
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from trackmux.api.auth import SIGNATURE_HEADER, require_api_secret, verify_signature
from trackmux.errors import JobNotCancellableError, JobNotFoundError
from trackmux.jobs.executor import ReconciliationExecutor
from trackmux.jobs.queue import JobQueue
from trackmux.jobs.scheduler import ResyncScheduler
from trackmux.jobs.worker import ReconciliationWorker
from trackmux.models.config import EngineConfig
from trackmux.models.jobs import JobStatus, ResyncPayload, UpdateTrackingsPayload
from trackmux.models.subscription import Thresholds
from trackmux.models.tracking import ActorId, TrackingRequest
from trackmux.provider.adapter import ProviderAdapter
from trackmux.provider.webhook import WebhookProviderAdapter
from trackmux.subscription.store import SubscriptionStore
from trackmux.tracking.store import TrackingStore

logger = logging.getLogger(__name__)

ActivityConsumer = Callable[[dict], Any]

_CANCEL_CONFLICTS = {
    JobStatus.COMPLETED.value: "job_already_completed",
    JobStatus.FAILED.value: "job_already_failed",
    JobStatus.CANCELLED.value: "job_already_cancelled",
    JobStatus.ACTIVE.value: "job_active",
}


# --- Request Models ---

class TrackingBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    add_users: List[TrackingRequest] = Field(default_factory=list, alias="addUsers")
    remove_users: List[TrackingRequest] = Field(default_factory=list, alias="removeUsers")


class ResyncRequest(BaseModel):
    reason: str = "manual"


class GroupRegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


# --- Application Factory ---

def create_app(
    config: Optional[EngineConfig] = None,
    tracking_store: Optional[TrackingStore] = None,
    subscription_store: Optional[SubscriptionStore] = None,
    job_queue: Optional[JobQueue] = None,
    provider: Optional[ProviderAdapter] = None,
    run_worker: bool = False,
    activity_consumer: Optional[ActivityConsumer] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    config = config or EngineConfig()

    # Initialize components
    ts = tracking_store or TrackingStore(config.db_path)
    ss = subscription_store or SubscriptionStore(config.db_path)
    jq = job_queue or JobQueue(config.db_path, config.queue)
    owns_provider = provider is None
    prov = provider or WebhookProviderAdapter(config.provider)

    executor = ReconciliationExecutor(
        tracking_store=ts,
        subscription_store=ss,
        provider=prov,
        default_thresholds=Thresholds(**config.thresholds.model_dump()),
        storage_timeout=config.queue.storage_timeout_seconds,
        provider_timeout=config.provider.timeout_seconds,
    )
    worker = ReconciliationWorker(jq, executor, config.queue)
    scheduler = (
        ResyncScheduler(jq, config.resync_cron, on_enqueue=worker.wake)
        if config.resync_cron
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_worker:
            worker.start()
            if scheduler is not None:
                scheduler.start()
        try:
            yield
        finally:
            if run_worker:
                if scheduler is not None:
                    await scheduler.stop()
                await worker.stop()
            if owns_provider:
                await prov.aclose()

    app = FastAPI(
        title="trackmux API",
        description="Subscription reconciliation engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.config = config
    app.state.tracking_store = ts
    app.state.subscription_store = ss
    app.state.job_queue = jq
    app.state.provider = prov
    app.state.executor = executor
    app.state.worker = worker
    app.state.scheduler = scheduler

    router = APIRouter(
        prefix="/trackings",
        tags=["trackings"],
        dependencies=[Depends(require_api_secret)],
    )

    # === BATCHES ===

    @router.post("/users", status_code=202)
    async def enqueue_batch(req: TrackingBatchRequest):
        """Queue a batch of add/remove requests for reconciliation."""
        if not req.add_users and not req.remove_users:
            raise HTTPException(400, {
                "status": "error",
                "error": "addUsers or removeUsers must contain at least one entry",
            })
        job = jq.enqueue(UpdateTrackingsPayload(
            add_users=req.add_users,
            remove_users=req.remove_users,
        ))
        worker.wake()
        return {
            "jobId": job.id,
            "status": "ok",
            "message": (
                f"Queued {len(req.add_users)} adds and "
                f"{len(req.remove_users)} removes"
            ),
        }

    @router.get("/users/status/{job_id}")
    def job_status(job_id: str):
        """Status, progress and result of a job."""
        try:
            view = jq.status(job_id)
        except JobNotFoundError:
            raise HTTPException(404, {"status": "error", "error": "job_not_found"})
        return view.model_dump(mode="json", by_alias=True, exclude_none=True)

    @router.delete("/users/{job_id}")
    def cancel_job(job_id: str):
        """Cancel a job that has not started yet."""
        try:
            jq.cancel(job_id)
        except JobNotFoundError:
            raise HTTPException(404, {"status": "error", "error": "job_not_found"})
        except JobNotCancellableError as e:
            raise HTTPException(409, {
                "status": "error",
                "error": _CANCEL_CONFLICTS.get(e.status, "job_not_cancellable"),
                "message": str(e),
            })
        return {"status": "success", "message": f"Job {job_id} cancelled"}

    @router.post("/resync", status_code=202)
    async def enqueue_resync(req: Optional[ResyncRequest] = None):
        """Queue a full recomputation of the filter from the relation table."""
        reason = req.reason if req else "manual"
        job = jq.enqueue(ResyncPayload(reason=reason))
        worker.wake()
        return {"jobId": job.id, "status": "ok", "message": "Resync queued"}

    # === INSPECTION ===

    @router.get("/queue")
    def queue_counts():
        """Job counts per status."""
        return {
            "counts": jq.counts(),
            "worker": "running" if worker.running else "stopped",
        }

    @router.get("/subscription")
    def current_subscription():
        """The locally mirrored provider subscription."""
        state = ss.current()
        if state is None:
            raise HTTPException(404, {"status": "error", "error": "no_subscription"})
        data = state.model_dump(mode="json")
        data["filter_set"] = sorted(state.filter_set)
        return data

    @router.put("/groups/{group_id}")
    def register_group(group_id: str, req: Optional[GroupRegisterRequest] = None):
        """Register a group, optionally with its conversation id."""
        group = ts.upsert_group(group_id, req.conversation_id if req else None)
        return group.model_dump(mode="json")

    @router.delete("/groups/{group_ref}", status_code=202)
    async def delete_group(group_ref: str):
        """Delete a group with its relations and queue a resync to drop orphaned actors."""
        group_id = ts.resolve_group(group_ref)
        if group_id is None:
            raise HTTPException(404, {"status": "error", "error": "group_not_found"})
        actors = ts.actors_watched_by(group_id)
        ts.delete_group(group_id)
        job = jq.enqueue(ResyncPayload(reason="group_deleted"))
        worker.wake()
        logger.info(
            "Deleted group %s with %d watched actors; resync %s queued",
            group_id, len(actors), job.id,
        )
        return {
            "jobId": job.id,
            "status": "ok",
            "message": f"Group {group_id} deleted, resync queued",
        }

    @router.get("/groups/{group_ref}/actors")
    def group_actors(group_ref: str):
        """Actors a group watches. Accepts a group id or conversation id."""
        group_id = ts.resolve_group(group_ref)
        if group_id is None:
            raise HTTPException(404, {"status": "error", "error": "group_not_found"})
        return {"groupId": group_id, "actors": ts.actors_watched_by(group_id)}

    @router.get("/actors/{actor_id}/groups")
    def actor_groups(actor_id: ActorId):
        """Groups watching an actor."""
        return {"actorId": actor_id, "groups": ts.groups_watching(actor_id)}

    app.include_router(router)

    # === PROVIDER EVENTS ===

    @app.post("/provider/events")
    async def provider_event(request: Request):
        """Signed activity notification from the provider."""
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_signature(raw_body, signature, config.api.webhook_secret or ""):
            logger.warning("Rejected provider event with invalid signature")
            raise HTTPException(401, {"status": "error", "error": "invalid_signature"})

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise HTTPException(400, {"status": "error", "error": "invalid_json"})
        if not isinstance(event, dict):
            raise HTTPException(400, {"status": "error", "error": "invalid_event"})

        event_type = event.get("type")
        if event_type != config.provider.event_type:
            logger.info("Ignoring provider event of type %r", event_type)
            return {"status": "success", "message": f"Ignored event type {event_type}"}

        if activity_consumer is not None:
            outcome = activity_consumer(event)
            if inspect.isawaitable(outcome):
                await outcome
        return {"status": "success", "message": "Event accepted"}

    return app
