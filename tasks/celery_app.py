"""
tasks/celery_app.py
Celery application instance shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "booking_attribution",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.attribution_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before.
    # Redelivery is safe: every side effect is deduplicated in the database.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    # Routing: triggers and broadcasts fan out to providers, sweeps are cheap
    task_routes={
        "tasks.attribution_tasks.process_booking_trigger": {"queue": "notifications"},
        "tasks.attribution_tasks.start_booking_attribution": {"queue": "notifications"},
        "tasks.attribution_tasks.expire_stale_attributions": {"queue": "default"},
        "tasks.attribution_tasks.fail_stale_pending_notifications": {"queue": "default"},
        "tasks.attribution_tasks.lift_expired_blacklists": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Close broadcasts nobody accepted within BROADCAST_WINDOW_HOURS
    "expire-stale-attributions": {
        "task": "tasks.attribution_tasks.expire_stale_attributions",
        "schedule": crontab(minute="*/15"),
    },

    # Notifications left PENDING by a crashed worker become FAILED (resendable)
    "fail-stale-pending-notifications": {
        "task": "tasks.attribution_tasks.fail_stale_pending_notifications",
        "schedule": 300,  # every 5 minutes
    },

    # Professionals blacklisted after repeated refusals become matchable again
    "lift-expired-blacklists": {
        "task": "tasks.attribution_tasks.lift_expired_blacklists",
        "schedule": crontab(minute=0),
    },
}
