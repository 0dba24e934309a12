"""
ImageRecord Model with Processing Status Tracking

Tracks one uploaded garment photo through the pipeline:
- Original file metadata
- Derived asset URLs (set only on completion)
- Extracted color palette
- Status, error text and attempt count
"""

import uuid
from enum import Enum
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Timezone-aware UTC now; every stored timestamp uses it."""
    return datetime.now(timezone.utc)


class ProcessingStatus(str, Enum):
    """Processing status states."""
    PENDING = "pending"         # Record created, pipeline not started
    PROCESSING = "processing"   # Pipeline owns the record
    COMPLETED = "completed"     # All stages succeeded
    FAILED = "failed"           # A fatal stage failed


# Rough progress estimate reported to polling clients
STATUS_PROGRESS: Dict[str, Dict[str, Any]] = {
    ProcessingStatus.PENDING.value: {"progress": 10, "current_step": "pending"},
    ProcessingStatus.PROCESSING.value: {"progress": 50, "current_step": "background-removal"},
    ProcessingStatus.COMPLETED.value: {"progress": 100, "current_step": "completed"},
    ProcessingStatus.FAILED.value: {"progress": 0, "current_step": "failed"},
}


class ImageRecord(SQLModel, table=True):
    """
    The unit of work and its audit trail.

    optimized_url / thumbnail_url / dominant_color / colors are written in the
    same UPDATE that sets status to completed.
    """
    __tablename__ = "image_records"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Owner association
    owner_id: str = Field(index=True)
    original_filename: Optional[str] = None

    # Public URLs
    original_url: str
    optimized_url: Optional[str] = None
    thumbnail_url: Optional[str] = None

    # Original file metadata
    mime_type: str = Field(default="image/png")
    width: int = Field(default=0)
    height: int = Field(default=0)
    size: int = Field(default=0)

    # Color analysis
    dominant_color: str = Field(default="#cccccc")
    colors: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    # Processing state
    processing_status: str = Field(default=ProcessingStatus.PENDING.value, index=True)
    processing_error: Optional[str] = None
    attempt_count: int = Field(default=0)
    processing_started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": utc_now}
    )

    def to_status_dict(self) -> Dict[str, Any]:
        """Convert to the status-polling response format."""
        progress = STATUS_PROGRESS.get(self.processing_status, {"progress": 0, "current_step": "unknown"})
        return {
            "image_id": self.id,
            "status": self.processing_status,
            "current_step": progress["current_step"],
            "progress": progress["progress"],
            "dominant_color": self.dominant_color,
            "colors": list(self.colors or []),
            "width": self.width,
            "height": self.height,
            "size": self.size,
            "urls": {
                "original": self.original_url,
                "optimized": self.optimized_url,
                "thumbnail": self.thumbnail_url,
            },
            "error": self.processing_error,
            "attempt_count": self.attempt_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
