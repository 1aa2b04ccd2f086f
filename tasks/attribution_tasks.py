"""
tasks/attribution_tasks.py
Celery entrypoints for booking triggers, attribution broadcasts and sweeps.

All tasks are idempotent and safe to run twice. Each run gets its own event
loop and a NullPool engine, so no connection outlives the task.

Usage from the upstream booking system:
    from tasks.attribution_tasks import process_booking_trigger
    process_booking_trigger.delay(booking_id=str(booking.id), trigger="BOOKING_CONFIRMED")
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import ValidationError as SchemaError

from config.database import create_task_session_factory
from services.documents.generator import HttpDocumentGenerator
from services.notification.senders import ProviderChannelSender
from services.orchestration.orchestrator import Orchestrator
from shared.schemas.schemas import AttributionStartRequest, TriggerOptions
from shared.utils.errors import EngineError
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run(work: Callable[[Orchestrator], Awaitable[T]]) -> T:
    """Build a task-scoped orchestrator, run `work` on a fresh loop, dispose the engine."""

    async def runner() -> T:
        engine, session_factory = create_task_session_factory()
        orchestrator = Orchestrator(
            session_factory=session_factory,
            sender=ProviderChannelSender(),
            documents=HttpDocumentGenerator(),
        )
        try:
            return await work(orchestrator)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


def _retry_or_raise(task, exc: Exception):
    """Engine errors are deterministic (bad input, wrong state): never retried."""
    if isinstance(exc, SchemaError) or (isinstance(exc, EngineError) and not exc.retryable):
        logger.warning(f"{task.name} failed permanently: {exc}")
        raise exc
    logger.exception(f"{task.name} failed, retry {task.request.retries + 1}/{task.max_retries}: {exc}")
    raise task.retry(exc=exc, countdown=60 * (2 ** task.request.retries))


# ── Triggers ───────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def process_booking_trigger(self, booking_id: str, trigger: str, options: Optional[dict] = None):
    """Re-delivery after a partial run only sends what is still missing."""
    try:
        result = _run(lambda o: o.on_booking_trigger(
            uuid.UUID(booking_id),
            trigger,
            TriggerOptions(**options) if options else None,
        ))
        logger.info(
            f"process_booking_trigger {trigger} for {booking_id}: "
            f"{len(result.dispatches)} dispatch(es), {result.reminders_created} reminder(s)"
        )
        return result.model_dump(mode="json")
    except Exception as e:
        _retry_or_raise(self, e)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def start_booking_attribution(self, request: dict):
    try:
        data = AttributionStartRequest(**request)
        result = _run(lambda o: o.start_attribution(data))
        logger.info(
            f"start_booking_attribution {data.booking_id}: {result.outcome}, "
            f"{result.notified_count}/{result.eligible_count} notified"
        )
        return result.model_dump(mode="json")
    except Exception as e:
        _retry_or_raise(self, e)


# ── Sweeps (Beat) ──────────────────────────────────────────────────────────────

@celery_app.task
def expire_stale_attributions():
    """BROADCASTING attributions older than BROADCAST_WINDOW_HOURS → EXPIRED."""
    expired = _run(lambda o: o.expire_stale_attributions())
    logger.info(f"expire_stale_attributions: {expired} expired")
    return expired


@celery_app.task
def fail_stale_pending_notifications():
    failed = _run(lambda o: o.fail_stale_pending_notifications())
    logger.info(f"fail_stale_pending_notifications: {failed} marked FAILED")
    return failed


@celery_app.task
def lift_expired_blacklists():
    lifted = _run(lambda o: o.lift_expired_blacklists())
    logger.info(f"lift_expired_blacklists: {lifted} lifted")
    return lifted
