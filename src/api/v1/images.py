"""
Images Endpoint - Upload, Status Polling, Retry

POST /api/v1/images                   - Upload a garment photo (returns immediately)
GET  /api/v1/images                   - List the caller's images
GET  /api/v1/images/stats             - Per-status counts for the caller
GET  /api/v1/images/{image_id}/status - Poll processing status
POST /api/v1/images/{image_id}/retry  - Re-run a failed image
"""

from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from src.core.config import settings
from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.api.dependencies import (
    get_ingestion_coordinator,
    get_owner_id,
    get_retry_coordinator,
    get_tracker,
)
from src.pipeline.coordinators import IngestionCoordinator, RetryCoordinator
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class UploadResponse(BaseModel):
    image_id: str
    original_url: str
    processing_status: str
    message: str


class ImageUrls(BaseModel):
    original: str
    optimized: Optional[str] = None
    thumbnail: Optional[str] = None


class ImageStatusResponse(BaseModel):
    """Status polling response."""
    image_id: str
    status: str
    current_step: str
    progress: int
    dominant_color: str
    colors: List[str]
    width: int
    height: int
    size: int
    urls: ImageUrls
    error: Optional[str] = None
    attempt_count: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ImageListResponse(BaseModel):
    images: List[ImageStatusResponse]
    total: int


class RetryResponse(BaseModel):
    image_id: str
    processing_status: str
    attempt_count: int
    message: str


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=UploadResponse, status_code=201)
async def upload_image(
    file: UploadFile = File(...),
    owner_id: str = Depends(get_owner_id),
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    """
    Upload a clothing photo.

    The original is stored and a pending record created; background removal,
    optimization, thumbnail and color extraction run detached. Poll the status
    endpoint for the outcome.
    """
    content_type = (file.content_type or "").lower()
    if content_type not in settings.allowed_mime_types:
        raise ValidationError(
            f"Unsupported file type: {content_type or 'unknown'}",
            details={"allowed": list(settings.allowed_mime_types)}
        )

    # Read one byte past the limit so oversize uploads are detected without buffering them whole
    data = await file.read(settings.MAX_UPLOAD_SIZE_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_SIZE_BYTES:
        max_mb = settings.MAX_UPLOAD_SIZE_BYTES / (1024 * 1024)
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds maximum allowed size ({max_mb:.0f}MB)"
        )

    logger.info("upload_received", owner_id=owner_id, content_type=content_type, size=len(data))

    record = await run_in_threadpool(
        coordinator.upload_and_process, owner_id, data, file.filename
    )

    return UploadResponse(
        image_id=record.id,
        original_url=record.original_url,
        processing_status=record.processing_status,
        message="Image uploaded. Processing has started.",
    )


@router.get("", response_model=ImageListResponse)
def list_images(
    owner_id: str = Depends(get_owner_id),
    tracker: StatusTracker = Depends(get_tracker),
):
    records = tracker.list_for_owner(owner_id)
    return ImageListResponse(
        images=[ImageStatusResponse(**record.to_status_dict()) for record in records],
        total=len(records),
    )


@router.get("/stats", response_model=Dict[str, int])
def image_stats(
    owner_id: str = Depends(get_owner_id),
    tracker: StatusTracker = Depends(get_tracker),
):
    """Counts of the caller's images per processing status."""
    return tracker.processing_stats(owner_id=owner_id)


@router.get("/{image_id}/status", response_model=ImageStatusResponse)
def get_image_status(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    tracker: StatusTracker = Depends(get_tracker),
):
    """
    Poll the processing status of an image.

    Progress is an estimate: pending 10, processing 50, completed 100,
    failed 0. Images owned by someone else are reported as not found.
    """
    record = tracker.get_or_raise(image_id, owner_id=owner_id)
    return ImageStatusResponse(**record.to_status_dict())


@router.post("/{image_id}/retry", response_model=RetryResponse, status_code=202)
def retry_image(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: RetryCoordinator = Depends(get_retry_coordinator),
):
    """Re-run a failed image starting from background removal."""
    record = coordinator.retry_processing(image_id, owner_id=owner_id)
    return RetryResponse(
        image_id=record.id,
        processing_status=record.processing_status,
        attempt_count=record.attempt_count,
        message="Retry started.",
    )
