"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "mentor_sessions",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.reschedule_tasks",
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

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_notification_email": {"rate_limit": "20/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.reschedule_tasks.*": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Close reschedule negotiations nobody answered before expires_at
    "expire-stale-reschedule-requests": {
        "task": "tasks.reschedule_tasks.expire_stale_reschedule_requests",
        "schedule": settings.RESCHEDULE_EXPIRY_INTERVAL_SECONDS,
    },
}
