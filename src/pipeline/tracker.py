"""
Status Tracker

Persistence of ImageRecord and its state machine:

    pending ──► processing ──► completed
                    │
                    └────────► failed ──► processing   (retry only)

Every transition is a conditional UPDATE on the expected current status, so
two overlapping actors cannot both move the same record. A transition that
matches no row returns False/None instead of being applied.
"""

from datetime import datetime
from typing import Optional, Dict, List

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from src.core.exceptions import ImageNotFoundError, PersistenceError
from src.core.logging import get_logger
from src.modules.wardrobe.models import ImageRecord, ProcessingStatus, utc_now
from src.pipeline.colors import ColorPalette

logger = get_logger(__name__)

MAX_PALETTE_COLORS = 5


def format_processing_error(message: str, attempt: int) -> str:
    """Human-readable failure text; the attempt suffix is display only."""
    return f"{message} [Attempt: {attempt}]"


class StatusTracker:
    """Reads and transitions ImageRecords through short-lived sessions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # Creation / reads
    # -------------------------------------------------------------------------

    def create(self, record: ImageRecord) -> ImageRecord:
        try:
            with self.session_factory() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                session.expunge(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create image record: {e}", image_id=record.id)
        return record

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with self.session_factory() as session:
            record = session.get(ImageRecord, image_id)
            if record is not None:
                session.expunge(record)
            return record

    def get_or_raise(self, image_id: str, owner_id: Optional[str] = None) -> ImageRecord:
        """Load a record; another owner's record is reported as missing."""
        record = self.get(image_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise ImageNotFoundError(image_id)
        return record

    def list_for_owner(self, owner_id: str) -> List[ImageRecord]:
        with self.session_factory() as session:
            statement = (
                select(ImageRecord)
                .where(ImageRecord.owner_id == owner_id)
                .order_by(ImageRecord.created_at.desc())
            )
            return list(session.exec(statement).all())

    def list_pending(self, limit: int = 10) -> List[ImageRecord]:
        """Oldest records that were created but never claimed by a pipeline run."""
        with self.session_factory() as session:
            statement = (
                select(ImageRecord)
                .where(ImageRecord.processing_status == ProcessingStatus.PENDING.value)
                .order_by(ImageRecord.created_at)
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def find_stalled(self, started_before: datetime) -> List[ImageRecord]:
        with self.session_factory() as session:
            statement = (
                select(ImageRecord)
                .where(ImageRecord.processing_status == ProcessingStatus.PROCESSING.value)
                .where(ImageRecord.processing_started_at < started_before)
            )
            return list(session.exec(statement).all())

    def processing_stats(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        stats = {"total": 0}
        stats.update({status.value: 0 for status in ProcessingStatus})

        statement = select(ImageRecord.processing_status, func.count()).group_by(
            ImageRecord.processing_status
        )
        if owner_id is not None:
            statement = statement.where(ImageRecord.owner_id == owner_id)

        with self.session_factory() as session:
            for status, count in session.exec(statement).all():
                stats[status] = count
                stats["total"] += count
        return stats

    def delete(self, image_id: str) -> bool:
        """Remove a record. Used only by the orphan audit, never by the pipeline."""
        try:
            with self.session_factory() as session:
                record = session.get(ImageRecord, image_id)
                if record is None:
                    return False
                session.delete(record)
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete image record: {e}", image_id=image_id)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def claim(self, image_id: str, expected: ProcessingStatus) -> bool:
        """Move `expected` (pending or failed) to processing. False if the record was elsewhere."""
        if expected not in (ProcessingStatus.PENDING, ProcessingStatus.FAILED):
            raise ValueError(f"Cannot claim a record from status {expected.value}")

        statement = (
            update(ImageRecord)
            .where(ImageRecord.id == image_id)
            .where(ImageRecord.processing_status == expected.value)
            .values(
                processing_status=ProcessingStatus.PROCESSING.value,
                processing_error=None,
                processing_started_at=utc_now(),
            )
        )
        claimed = self._execute(statement, image_id) == 1
        logger.info("record_claimed" if claimed else "record_claim_skipped", image_id=image_id, expected=expected.value)
        return claimed

    def mark_completed(
        self,
        image_id: str,
        optimized_url: str,
        thumbnail_url: str,
        palette: ColorPalette,
    ) -> bool:
        """processing -> completed, writing every derived field in the same statement."""
        colors = list(palette.colors[:MAX_PALETTE_COLORS]) or [palette.dominant_color]
        statement = (
            update(ImageRecord)
            .where(ImageRecord.id == image_id)
            .where(ImageRecord.processing_status == ProcessingStatus.PROCESSING.value)
            .values(
                processing_status=ProcessingStatus.COMPLETED.value,
                optimized_url=optimized_url,
                thumbnail_url=thumbnail_url,
                dominant_color=palette.dominant_color,
                colors=colors,
                processing_error=None,
            )
        )
        return self._execute(statement, image_id) == 1

    def mark_failed(self, image_id: str, message: str) -> Optional[int]:
        """processing -> failed. Returns the new attempt count, or None if not processing."""
        try:
            with self.session_factory() as session:
                current = session.exec(
                    select(ImageRecord.attempt_count)
                    .where(ImageRecord.id == image_id)
                    .where(ImageRecord.processing_status == ProcessingStatus.PROCESSING.value)
                ).first()
                if current is None:
                    return None

                attempt = current + 1
                result = session.execute(
                    update(ImageRecord)
                    .where(ImageRecord.id == image_id)
                    .where(ImageRecord.processing_status == ProcessingStatus.PROCESSING.value)
                    .where(ImageRecord.attempt_count == current)
                    .values(
                        processing_status=ProcessingStatus.FAILED.value,
                        processing_error=format_processing_error(message, attempt),
                        attempt_count=attempt,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record failure: {e}", image_id=image_id)

        return attempt if result.rowcount == 1 else None

    def _execute(self, statement, image_id: str) -> int:
        try:
            with self.session_factory() as session:
                result = session.execute(statement)
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update image record: {e}", image_id=image_id)
