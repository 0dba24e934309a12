"""
Celery Application Configuration

Configures Celery with:
- A dedicated queue for pipeline runs (CPU + subprocess bound)
- Late acknowledgment so a lost worker's run is redelivered
- Beat schedule for stall recovery and pending re-dispatch
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "wardrobe_pipeline",
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
    # A run is bounded by the subprocess timeout plus Pillow work
    task_time_limit=300,
    task_soft_time_limit=240,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,  # background removal is memory hungry

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("pipeline_queue", routing_key="pipeline.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "src.pipeline.tasks.process_image": {"queue": "pipeline_queue"},
        "src.pipeline.tasks.recover_stalled_images": {"queue": "default"},
        "src.pipeline.tasks.dispatch_pending_images": {"queue": "default"},
    },

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "recover-stalled-images": {
        "task": "src.pipeline.tasks.recover_stalled_images",
        "schedule": 60.0,
    },
    "dispatch-pending-images": {
        "task": "src.pipeline.tasks.dispatch_pending_images",
        "schedule": 120.0,
    },
}
