"""
Pipeline Runner

Executes the ordered stage list for one image and records the terminal state.
Runs detached from whoever launched it: nothing here raises to a caller.
"""

import time
from typing import List

from src.core.config import PipelineConfig
from src.core.exceptions import PersistenceError, PipelineStageError
from src.core.logging import get_logger, LogContext
from src.core.metrics import (
    record_pipeline_finished,
    record_pipeline_started,
    track_stage_latency,
)
from src.core.storage import IStorage
from src.modules.wardrobe.models import ProcessingStatus
from src.pipeline.stages import Stage, StageContext, build_default_stages
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)


class PipelineRunner:
    def __init__(
        self,
        tracker: StatusTracker,
        storage: IStorage,
        stages: List[Stage],
        config: PipelineConfig,
    ):
        self.tracker = tracker
        self.storage = storage
        self.stages = stages
        self.config = config

    def run(self, image_id: str, claimed: bool = False) -> str:
        """
        Run every stage for `image_id`.

        Args:
            image_id: Record to process
            claimed: True when the caller already moved the record into
                processing (retry path); otherwise pending -> processing is
                claimed here and the run is skipped if that fails.

        Returns:
            The status the record was left in, or "skipped".
        """
        with LogContext(image_id=image_id) as log_ctx:
            try:
                if not claimed and not self.tracker.claim(image_id, ProcessingStatus.PENDING):
                    logger.warning("pipeline_skipped", reason="record not pending")
                    return "skipped"
                record = self.tracker.get(image_id)
            except PersistenceError as e:
                logger.error("pipeline_claim_failed", error=e.message)
                return "skipped"

            if record is None:
                logger.warning("pipeline_skipped", reason="record not found")
                return "skipped"

            context = StageContext(
                image_id=record.id,
                owner_id=record.owner_id,
                original_path=self.storage.resolve_url(record.original_url),
            )

            record_pipeline_started()
            start = time.time()
            logger.info("pipeline_started", stages=[stage.name for stage in self.stages], attempt=record.attempt_count + 1)

            try:
                for stage in self.stages:
                    log_ctx.set_stage(stage.name)
                    stage_start = time.time()
                    with track_stage_latency(stage.name):
                        context = stage.run(context)
                    logger.info("stage_completed", duration_ms=int((time.time() - stage_start) * 1000))

                return self._complete(context, start)

            except PipelineStageError as e:
                logger.error("stage_failed", error=e.message, details=e.details)
                return self._fail(image_id, e.message, e.stage, start)

            except PersistenceError as e:
                logger.error("pipeline_persistence_error", error=e.message)
                return self._fail(image_id, e.message, "persistence", start)

            except Exception as e:
                logger.exception("pipeline_unexpected_error", error=str(e))
                return self._fail(image_id, f"Unexpected error: {e}", "unknown", start)

    def _complete(self, context: StageContext, start: float) -> str:
        optimized_url = self.storage.public_url(context.optimized_path)
        thumbnail_url = self.storage.public_url(context.thumbnail_path)

        if not self.tracker.mark_completed(context.image_id, optimized_url, thumbnail_url, context.palette):
            # Someone else moved the record (e.g. stall recovery); leave it as they set it
            logger.warning("pipeline_completion_rejected", reason="record no longer processing")
            record_pipeline_finished("rejected", time.time() - start)
            return "rejected"

        duration = time.time() - start
        record_pipeline_finished(ProcessingStatus.COMPLETED.value, duration)
        logger.info(
            "pipeline_completed",
            duration_ms=int(duration * 1000),
            dominant_color=context.palette.dominant_color,
            optimized_url=optimized_url,
            thumbnail_url=thumbnail_url,
        )
        return ProcessingStatus.COMPLETED.value

    def _fail(self, image_id: str, message: str, stage: str, start: float) -> str:
        duration = time.time() - start
        record_pipeline_finished(ProcessingStatus.FAILED.value, duration, failure_stage=stage or "unknown")

        try:
            attempt = self.tracker.mark_failed(image_id, message)
        except PersistenceError as e:
            logger.error("pipeline_failure_not_recorded", error=e.message, original_error=message)
            return ProcessingStatus.FAILED.value

        if attempt is None:
            logger.warning("pipeline_failure_rejected", reason="record no longer processing")
            return "rejected"

        logger.error("pipeline_failed", failure_stage=stage, error=message, attempt=attempt, duration_ms=int(duration * 1000))
        return ProcessingStatus.FAILED.value


def build_runner(
    tracker: StatusTracker,
    storage: IStorage,
    config: PipelineConfig,
    remover=None,
) -> PipelineRunner:
    return PipelineRunner(tracker, storage, build_default_stages(config, storage, remover), config)


def default_runner() -> PipelineRunner:
    """Runner wired to the process-wide settings, database and storage."""
    from src.core.config import settings
    from src.core.database import session_maker
    from src.core.storage import get_storage

    return build_runner(
        StatusTracker(session_maker),
        get_storage(),
        PipelineConfig.from_settings(settings),
    )
