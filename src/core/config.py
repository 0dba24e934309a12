"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.

The pipeline itself never reads `settings` directly: coordinators, runner and
stages receive an immutable PipelineConfig built from it.
"""

import sys
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings


DEFAULT_BG_REMOVAL_TOOL = str(
    Path(__file__).resolve().parent.parent / "tools" / "remove_background.py"
)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Wardrobe Image Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Infrastructure
    # ==========================================================================
    REDIS_URL: str = "redis://localhost:6379/1"
    DATABASE_URL: str = "sqlite:///./data/wardrobe.db"

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    # Public URLs are paths relative to STORAGE_ROOT
    STORAGE_ROOT: str = "./data/public"
    UPLOAD_SUBDIR: str = "uploads/clothing"

    # Upload validation (performed by the upload endpoint)
    MAX_UPLOAD_SIZE_BYTES: int = 10485760  # 10MB
    ALLOWED_MIME_TYPES: str = "image/jpeg,image/jpg,image/png,image/webp"

    # ==========================================================================
    # Pipeline Settings
    # ==========================================================================
    # Background removal tool: [interpreter] tool <source> <destination>
    BG_REMOVAL_INTERPRETER: Optional[str] = sys.executable
    BG_REMOVAL_TOOL: str = DEFAULT_BG_REMOVAL_TOOL
    BG_REMOVAL_TIMEOUT_SECONDS: float = 30.0
    BG_REMOVAL_SUCCESS_MARKER: str = "SUCCESS"

    # Optimization (bounding box, lossless)
    OPTIMIZED_MAX_WIDTH: int = 1200
    OPTIMIZED_MAX_HEIGHT: int = 1200
    OPTIMIZED_FORMAT: str = "PNG"
    OPTIMIZED_QUALITY: int = 85

    # Thumbnail (cover crop, lossy)
    THUMBNAIL_WIDTH: int = 300
    THUMBNAIL_HEIGHT: int = 300
    THUMBNAIL_FORMAT: str = "WEBP"
    THUMBNAIL_QUALITY: int = 80

    # Color extraction
    COLOR_SAMPLE_SIZE: int = 100
    COLOR_WHITE_THRESHOLD: int = 240
    COLOR_PALETTE_SIZE: int = 5
    COLOR_FALLBACK: str = "#cccccc"

    # Retry / recovery
    MAX_RETRIES: int = 3
    STALL_TIMEOUT_SECONDS: int = 600

    # Detached execution: "celery" or "thread"
    PIPELINE_LAUNCHER: str = "celery"
    PIPELINE_THREAD_WORKERS: int = 4

    # ==========================================================================
    # Celery Settings
    # ==========================================================================
    CELERY_BROKER_URL: Optional[str] = None  # Falls back to REDIS_URL
    CELERY_RESULT_BACKEND: Optional[str] = None  # Falls back to REDIS_URL

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def upload_root(self) -> Path:
        return Path(self.STORAGE_ROOT) / self.UPLOAD_SUBDIR

    @property
    def allowed_mime_types(self) -> Tuple[str, ...]:
        return tuple(t.strip() for t in self.ALLOWED_MIME_TYPES.split(",") if t.strip())


class PipelineConfig(BaseModel):
    """Immutable pipeline configuration passed into coordinators and stages."""

    model_config = ConfigDict(frozen=True)

    bg_removal_interpreter: Optional[str] = sys.executable
    bg_removal_tool: str = DEFAULT_BG_REMOVAL_TOOL
    bg_removal_timeout_seconds: float = 30.0
    bg_removal_success_marker: str = "SUCCESS"

    optimized_max_size: Tuple[int, int] = (1200, 1200)
    optimized_format: str = "PNG"
    optimized_quality: int = 85

    thumbnail_size: Tuple[int, int] = (300, 300)
    thumbnail_format: str = "WEBP"
    thumbnail_quality: int = 80

    color_sample_size: int = 100
    color_white_threshold: int = 240
    color_palette_size: int = 5
    color_fallback: str = "#cccccc"

    max_retries: int = 3
    stall_timeout_seconds: int = 600

    @classmethod
    def from_settings(cls, source: Settings) -> "PipelineConfig":
        return cls(
            bg_removal_interpreter=source.BG_REMOVAL_INTERPRETER or None,
            bg_removal_tool=source.BG_REMOVAL_TOOL,
            bg_removal_timeout_seconds=source.BG_REMOVAL_TIMEOUT_SECONDS,
            bg_removal_success_marker=source.BG_REMOVAL_SUCCESS_MARKER,
            optimized_max_size=(source.OPTIMIZED_MAX_WIDTH, source.OPTIMIZED_MAX_HEIGHT),
            optimized_format=source.OPTIMIZED_FORMAT,
            optimized_quality=source.OPTIMIZED_QUALITY,
            thumbnail_size=(source.THUMBNAIL_WIDTH, source.THUMBNAIL_HEIGHT),
            thumbnail_format=source.THUMBNAIL_FORMAT,
            thumbnail_quality=source.THUMBNAIL_QUALITY,
            color_sample_size=source.COLOR_SAMPLE_SIZE,
            color_white_threshold=source.COLOR_WHITE_THRESHOLD,
            color_palette_size=source.COLOR_PALETTE_SIZE,
            color_fallback=source.COLOR_FALLBACK,
            max_retries=source.MAX_RETRIES,
            stall_timeout_seconds=source.STALL_TIMEOUT_SECONDS,
        )


# Global settings instance
settings = Settings()

# Ensure critical directories exist
settings.upload_root.mkdir(parents=True, exist_ok=True)
Path("./data").mkdir(parents=True, exist_ok=True)
