"""
Celery Application Configuration

Configures Celery with:
- Separate queues for run ingestion and composition
- Late acknowledgment so a lost worker does not lose a barrier signal
- Beat schedule for the stalled-job watchdog
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "mask_aggregation",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit

    # Result expiration
    result_expires=86400,  # 24 hours

    # Composition is CPU bound; one task at a time per worker process
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("ingest", routing_key="ingest.#"),
        Queue("compositor", routing_key="compositor.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "src.pipeline.tasks.submit_run_result": {"queue": "ingest"},
        "src.pipeline.tasks.check_aggregation_job": {"queue": "compositor"},
        "src.pipeline.tasks.force_finalize_job": {"queue": "compositor"},
        "src.pipeline.tasks.sweep_stalled_jobs": {"queue": "default"},
    },

    # Retry settings
    task_default_retry_delay=5,
    task_max_retries=5,

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Inline execution for tests and local development
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

# Beat schedule: the watchdog owns timeouts, the engine has none
celery_app.conf.beat_schedule = {
    "sweep-stalled-aggregation-jobs": {
        "task": "src.pipeline.tasks.sweep_stalled_jobs",
        "schedule": settings.WATCHDOG_INTERVAL_SECONDS,
    },
}
