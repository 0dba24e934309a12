"""
Celery Tasks for the Image Processing Pipeline

- process_image: one full pipeline run for an image (late-acked)
- recover_stalled_images: periodic stall recovery (beat)
- dispatch_pending_images: periodic re-dispatch of never-launched records (beat)

Stage failures are folded into the record by the runner, so these tasks only
fail on bugs; they are never retried by Celery. Retrying an image is a user
action that goes through RetryCoordinator.
"""

import traceback
from typing import Dict, Any, List

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.database import session_maker
from src.core.logging import get_logger, clear_image_context, set_image_context
from src.pipeline.coordinators import dispatch_pending, recover_stalled
from src.pipeline.launcher import CeleryLauncher
from src.pipeline.runner import default_runner
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)


@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.process_image",
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_image(self, image_id: str, claimed: bool = False) -> Dict[str, Any]:
    """
    Run every stage for one image.

    Args:
        image_id: ImageRecord id
        claimed: True when the record was already moved into processing
    """
    set_image_context(image_id, "pipeline")

    try:
        logger.info("task_process_image_started", task_id=self.request.id, claimed=claimed)
        status = default_runner().run(image_id, claimed=claimed)
        logger.info("task_process_image_finished", status=status)
        return {"image_id": image_id, "status": status}

    except Exception as e:
        logger.error(
            "task_process_image_unexpected_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        raise

    finally:
        clear_image_context()


@celery_app.task(name="src.pipeline.tasks.recover_stalled_images")
def recover_stalled_images() -> List[str]:
    recovered = recover_stalled(StatusTracker(session_maker), settings.STALL_TIMEOUT_SECONDS)
    if recovered:
        logger.warning("stall_recovery_completed", recovered=len(recovered))
    return recovered


@celery_app.task(name="src.pipeline.tasks.dispatch_pending_images")
def dispatch_pending_images() -> List[str]:
    dispatched = dispatch_pending(StatusTracker(session_maker), CeleryLauncher())
    if dispatched:
        logger.info("pending_dispatch_completed", dispatched=len(dispatched))
    return dispatched
