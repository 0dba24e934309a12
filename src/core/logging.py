"""
Structured Logging for the Wardrobe Pipeline

JSON events keyed by image. Inside a request or a pipeline run the current
owner_id, image_id and pipeline stage are attached to every event, so one
image can be followed from upload through each stage to its final status.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

# Per-request / per-run context
owner_id_var: ContextVar[Optional[str]] = ContextVar("owner_id", default=None)
image_id_var: ContextVar[Optional[str]] = ContextVar("image_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    owner_id = owner_id_var.get()
    if owner_id:
        event_dict.setdefault("owner_id", owner_id)

    image_id = image_id_var.get()
    if image_id:
        event_dict.setdefault("image_id", image_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Scope events to one image, optionally with its owner and current stage.

    The runner enters it once per run and advances the stage as it goes:

        with LogContext(image_id=image_id) as ctx:
            ctx.set_stage("background_removal")
            ...
            ctx.set_stage("thumbnail")

    Values are restored on exit, so nested contexts (a retry inside a request)
    do not leak into the caller.
    """

    def __init__(
        self,
        image_id: Optional[str] = None,
        stage: Optional[str] = None,
        owner_id: Optional[str] = None,
    ):
        self.image_id = image_id
        self.stage = stage
        self.owner_id = owner_id
        self._image_id_token = None
        self._stage_token = None
        self._owner_id_token = None

    def __enter__(self):
        if self.owner_id:
            self._owner_id_token = owner_id_var.set(self.owner_id)
        if self.image_id:
            self._image_id_token = image_id_var.set(self.image_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._image_id_token:
            image_id_var.reset(self._image_id_token)
        if self._owner_id_token:
            owner_id_var.reset(self._owner_id_token)
        return False

    def set_stage(self, stage: str):
        """Update the current stage for the rest of this context."""
        if self._stage_token:
            stage_var.reset(self._stage_token)
        self._stage_token = stage_var.set(stage)


def set_image_context(image_id: str, stage: Optional[str] = None):
    """Bind an image for the rest of a Celery task; paired with clear_image_context()."""
    image_id_var.set(image_id)
    if stage:
        stage_var.set(stage)


def clear_image_context():
    """Forget the image bound by set_image_context() so pooled workers start clean."""
    owner_id_var.set(None)
    image_id_var.set(None)
    stage_var.set(None)


# A stage event as emitted by the runner:
# {
#   "timestamp": "2026-05-20T10:00:00Z",
#   "level": "info",
#   "event": "stage_completed",
#   "stage": "background_removal",
#   "owner_id": "user-1",
#   "image_id": "550e8400-e29b-41d4-a716-446655440000",
#   "version": "1.0.0",
#   "duration_ms": 4200
# }
