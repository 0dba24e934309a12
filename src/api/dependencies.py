"""
FastAPI Dependencies for the Wardrobe Pipeline

Provides dependency injection for:
- Pipeline configuration (frozen, built once from settings)
- Status tracker (shared session factory)
- Pipeline launcher (singleton, Celery or thread pool)
- Ingestion / retry coordinators (per request)
- Caller identity (X-Owner-Id header)

Tests override these with app.dependency_overrides.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header

from src.core.config import settings, PipelineConfig
from src.core.database import session_maker
from src.core.exceptions import ValidationError
from src.core.logging import get_logger
from src.core.storage import get_storage, IStorage
from src.pipeline.coordinators import IngestionCoordinator, RetryCoordinator
from src.pipeline.launcher import PipelineLauncher, build_launcher
from src.pipeline.runner import default_runner
from src.pipeline.tracker import StatusTracker

logger = get_logger(__name__)


# =============================================================================
# Singletons
# =============================================================================

_launcher: Optional[PipelineLauncher] = None


@lru_cache
def get_pipeline_config() -> PipelineConfig:
    """Returns the process-wide immutable pipeline configuration."""
    return PipelineConfig.from_settings(settings)


def get_tracker() -> StatusTracker:
    return StatusTracker(session_maker)


def get_launcher() -> PipelineLauncher:
    """Returns the singleton launcher selected by PIPELINE_LAUNCHER."""
    global _launcher
    if _launcher is None:
        _launcher = build_launcher(
            settings.PIPELINE_LAUNCHER,
            runner_factory=default_runner,
            max_workers=settings.PIPELINE_THREAD_WORKERS,
        )
        logger.info("pipeline_launcher_created", kind=settings.PIPELINE_LAUNCHER)
    return _launcher


def shutdown_launcher():
    global _launcher
    if _launcher is not None and hasattr(_launcher, "shutdown"):
        _launcher.shutdown(wait=False)
    _launcher = None


# =============================================================================
# Coordinators
# =============================================================================

def get_ingestion_coordinator(
    tracker: StatusTracker = Depends(get_tracker),
    storage: IStorage = Depends(get_storage),
    launcher: PipelineLauncher = Depends(get_launcher),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> IngestionCoordinator:
    return IngestionCoordinator(tracker, storage, launcher, config)


def get_retry_coordinator(
    tracker: StatusTracker = Depends(get_tracker),
    launcher: PipelineLauncher = Depends(get_launcher),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> RetryCoordinator:
    return RetryCoordinator(tracker, launcher, config)


# =============================================================================
# Identity
# =============================================================================

def get_owner_id(x_owner_id: str = Header(..., alias="X-Owner-Id")) -> str:
    """The authenticated user id, supplied by the gateway in front of this service."""
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise ValidationError("X-Owner-Id header is empty")
    return owner_id
