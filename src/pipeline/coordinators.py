"""
Pipeline Coordinators

The only entry points that raise to callers:

- IngestionCoordinator: persist an upload and launch processing detached
- RetryCoordinator: bounded re-run of a failed record

plus the housekeeping used by the periodic tasks and scripts
(stall recovery, re-dispatch of never-launched records, orphan audit).
"""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from src.core.config import PipelineConfig
from src.core.exceptions import (
    InvalidStateError,
    PersistenceError,
    RetryLimitReachedError,
    ValidationError,
)
from src.core.logging import get_logger, LogContext
from src.core.metrics import record_retry_request, stalled_records_total
from src.core.storage import IStorage
from src.modules.wardrobe.models import ImageRecord, ProcessingStatus, utc_now
from src.pipeline.imaging import inspect_bytes
from src.pipeline.launcher import PipelineLauncher
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)


class IngestionCoordinator:
    def __init__(
        self,
        tracker: StatusTracker,
        storage: IStorage,
        launcher: PipelineLauncher,
        config: PipelineConfig,
    ):
        self.tracker = tracker
        self.storage = storage
        self.launcher = launcher
        self.config = config

    def upload_and_process(
        self,
        owner_id: str,
        file_bytes: bytes,
        original_filename: Optional[str] = None,
    ) -> ImageRecord:
        """
        Persist the original, create a pending record and launch the pipeline.

        Returns as soon as the record exists; processing happens detached.

        Raises:
            ValidationError: bytes are not a decodable image, or owner id is unsafe
            PersistenceError: the original or the record could not be written
        """
        if not file_bytes:
            raise ValidationError("Uploaded file is empty")

        try:
            info = inspect_bytes(file_bytes)
        except Exception as e:
            raise ValidationError(f"Uploaded file is not a valid image: {e}")

        image_id = str(uuid.uuid4())
        with LogContext(image_id=image_id, stage="ingestion", owner_id=owner_id):
            original_path = self.storage.write_original(owner_id, image_id, file_bytes, info.extension)

            record = ImageRecord(
                id=image_id,
                owner_id=owner_id,
                original_filename=original_filename,
                original_url=self.storage.public_url(original_path),
                mime_type=info.mime_type,
                width=info.width,
                height=info.height,
                size=info.size,
                processing_status=ProcessingStatus.PENDING.value,
            )
            try:
                record = self.tracker.create(record)
            except PersistenceError:
                self.storage.delete(original_path)
                raise

            logger.info(
                "image_ingested",
                owner_id=owner_id,
                mime_type=info.mime_type,
                width=info.width,
                height=info.height,
                size=info.size,
            )
            _launch(self.launcher, image_id, claimed=False)

        return record


class RetryCoordinator:
    def __init__(
        self,
        tracker: StatusTracker,
        launcher: PipelineLauncher,
        config: PipelineConfig,
    ):
        self.tracker = tracker
        self.launcher = launcher
        self.config = config

    def retry_processing(self, image_id: str, owner_id: Optional[str] = None) -> ImageRecord:
        """
        Re-run a failed record from background removal, reusing its original.

        A rejected retry leaves the record untouched and launches nothing.

        Raises:
            ImageNotFoundError: no such record (or not visible to owner_id)
            InvalidStateError: record is not failed, or another retry won the race
            RetryLimitReachedError: attempt_count exceeds max_retries
        """
        record = self.tracker.get_or_raise(image_id, owner_id=owner_id)

        with LogContext(image_id=image_id, stage="retry", owner_id=record.owner_id):
            if record.processing_status != ProcessingStatus.FAILED.value:
                record_retry_request("invalid_state")
                logger.warning("retry_rejected", reason="invalid_state", status=record.processing_status)
                raise InvalidStateError(image_id, record.processing_status)

            if record.attempt_count > self.config.max_retries:
                record_retry_request("limit_reached")
                logger.warning("retry_rejected", reason="limit_reached", attempt_count=record.attempt_count)
                raise RetryLimitReachedError(image_id, self.config.max_retries)

            if not self.tracker.claim(image_id, ProcessingStatus.FAILED):
                current = self.tracker.get(image_id)
                status = current.processing_status if current else "unknown"
                record_retry_request("invalid_state")
                logger.warning("retry_rejected", reason="lost_race", status=status)
                raise InvalidStateError(image_id, status)

            record_retry_request("accepted")
            logger.info("retry_accepted", attempt_count=record.attempt_count)
            _launch(self.launcher, image_id, claimed=True)

        return self.tracker.get(image_id)


def _launch(launcher: PipelineLauncher, image_id: str, claimed: bool):
    # A failed launch leaves the record pending (re-dispatched) or processing (stall recovery)
    try:
        launcher.launch(image_id, claimed=claimed)
    except Exception as e:
        logger.error("pipeline_launch_failed", error=str(e), claimed=claimed)


def recover_stalled(
    tracker: StatusTracker,
    stall_timeout_seconds: int,
    now: Optional[datetime] = None,
) -> List[str]:
    """Fail every record stuck in processing for longer than the stall timeout."""
    cutoff = (now or utc_now()) - timedelta(seconds=stall_timeout_seconds)
    recovered = []

    for record in tracker.find_stalled(cutoff):
        with LogContext(image_id=record.id, stage="stall_recovery"):
            attempt = tracker.mark_failed(
                record.id,
                f"Processing stalled for more than {stall_timeout_seconds}s",
            )
            if attempt is None:
                # Finished between the scan and the update
                continue
            stalled_records_total.inc()
            logger.warning("stalled_record_failed", attempt=attempt, started_at=str(record.processing_started_at))
            recovered.append(record.id)

    return recovered


def dispatch_pending(
    tracker: StatusTracker,
    launcher: PipelineLauncher,
    older_than_seconds: int = 60,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> List[str]:
    """Launch records left pending (e.g. the broker was down at upload time)."""
    cutoff = (now or utc_now()) - timedelta(seconds=older_than_seconds)
    dispatched = []

    for record in tracker.list_pending(limit=limit):
        if record.created_at >= cutoff:
            continue
        with LogContext(image_id=record.id, stage="dispatch"):
            _launch(launcher, record.id, claimed=False)
            logger.info("pending_record_dispatched")
        dispatched.append(record.id)

    return dispatched


def audit_images(
    tracker: StatusTracker,
    storage: IStorage,
    owner_id: str,
    delete_orphans: bool = False,
) -> List[dict]:
    """
    Check that every stored URL of an owner's records points at a file.

    A completed record whose thumbnail is gone is an orphan; with
    delete_orphans the record and its remaining files are removed.
    """
    report = []

    for record in tracker.list_for_owner(owner_id):
        urls = {
            "original": record.original_url,
            "optimized": record.optimized_url,
            "thumbnail": record.thumbnail_url,
        }
        files = {
            name: storage.exists(storage.resolve_url(url))
            for name, url in urls.items()
            if url
        }
        orphan = (
            record.processing_status == ProcessingStatus.COMPLETED.value
            and not files.get("thumbnail", False)
        )
        entry = {
            "image_id": record.id,
            "status": record.processing_status,
            "files": files,
            "orphan": orphan,
            "deleted": False,
        }

        if orphan and delete_orphans:
            for url in urls.values():
                if url:
                    storage.delete(storage.resolve_url(url))
            entry["deleted"] = tracker.delete(record.id)
            logger.warning("orphaned_record_deleted", image_id=record.id, owner_id=owner_id)

        report.append(entry)

    return report
