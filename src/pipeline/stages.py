"""
Pipeline Stage Implementations

Each stage consumes the paths produced by the stages before it and adds its
own output to the shared StageContext. Stages run strictly in list order; a
raised PipelineStageError aborts the run.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List

from src.core.config import PipelineConfig
from src.core.exceptions import (
    OptimizationError,
    ThumbnailError,
)
from src.core.logging import get_logger
from src.core.storage import IStorage
from src.pipeline.background import (
    BackgroundRemover,
    SubprocessBackgroundRemover,
    remove_background,
)
from src.pipeline.colors import ColorPalette, extract_colors
from src.pipeline.imaging import (
    create_thumbnail,
    discard,
    extension_for,
    inspect_file,
    optimize_image,
)

logger = get_logger(__name__)


@dataclass
class StageContext:
    """Paths and results accumulated across one pipeline run."""
    image_id: str
    owner_id: str
    original_path: Path
    processed_path: Optional[Path] = None
    optimized_path: Optional[Path] = None
    thumbnail_path: Optional[Path] = None
    palette: Optional[ColorPalette] = None
    metadata: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class Stage(ABC):
    """One step of the pipeline: (context) -> context, or a PipelineStageError."""

    name: str = "stage"

    @abstractmethod
    def run(self, context: StageContext) -> StageContext:
        ...


# =============================================================================
# Stage 1: Background Removal
# =============================================================================

class BackgroundRemovalStage(Stage):
    name = "background_removal"

    def __init__(self, remover: BackgroundRemover, storage: IStorage):
        self.remover = remover
        self.storage = storage

    def run(self, context: StageContext) -> StageContext:
        destination = self.storage.path_for(context.owner_id, context.image_id, "processed", "png")
        context.processed_path = remove_background(self.remover, context.original_path, destination)
        return context


# =============================================================================
# Stage 2: Optimization
# =============================================================================

class OptimizationStage(Stage):
    name = "optimization"

    def __init__(self, storage: IStorage, config: PipelineConfig):
        self.storage = storage
        self.config = config

    def run(self, context: StageContext) -> StageContext:
        if context.processed_path is None:
            raise OptimizationError("Image optimization failed: no background-removed input")

        destination = self.storage.path_for(
            context.owner_id,
            context.image_id,
            "optimized",
            extension_for(self.config.optimized_format),
        )
        try:
            optimize_image(
                context.processed_path,
                destination,
                max_size=self.config.optimized_max_size,
                fmt=self.config.optimized_format,
                quality=self.config.optimized_quality,
            )
            info = inspect_file(destination)
        except Exception as e:
            discard(destination)
            logger.error("optimization_failed", error=str(e), source=str(context.processed_path))
            raise OptimizationError(f"Image optimization failed: {e}")

        context.optimized_path = destination
        context.metadata[self.name] = {"width": info.width, "height": info.height, "size": info.size}
        return context


# =============================================================================
# Stage 3: Thumbnail
# =============================================================================

class ThumbnailStage(Stage):
    name = "thumbnail"

    def __init__(self, storage: IStorage, config: PipelineConfig):
        self.storage = storage
        self.config = config

    def run(self, context: StageContext) -> StageContext:
        if context.optimized_path is None:
            raise ThumbnailError("Thumbnail creation failed: no optimized input")

        destination = self.storage.path_for(
            context.owner_id,
            context.image_id,
            "thumbnail",
            extension_for(self.config.thumbnail_format),
        )
        try:
            create_thumbnail(
                context.optimized_path,
                destination,
                size=self.config.thumbnail_size,
                fmt=self.config.thumbnail_format,
                quality=self.config.thumbnail_quality,
            )
        except Exception as e:
            discard(destination)
            logger.error("thumbnail_failed", error=str(e), source=str(context.optimized_path))
            raise ThumbnailError(f"Thumbnail creation failed: {e}")

        context.thumbnail_path = destination
        return context


# =============================================================================
# Stage 4: Color Extraction (never fatal)
# =============================================================================

class ColorExtractionStage(Stage):
    name = "color_extraction"

    def __init__(self, config: PipelineConfig):
        self.config = config

    def run(self, context: StageContext) -> StageContext:
        source = context.optimized_path or context.processed_path or context.original_path
        context.palette = extract_colors(
            source,
            sample_size=self.config.color_sample_size,
            white_threshold=self.config.color_white_threshold,
            palette_size=self.config.color_palette_size,
            fallback=self.config.color_fallback,
        )
        context.metadata[self.name] = {"colors": len(context.palette.colors)}
        return context


def build_default_stages(
    config: PipelineConfig,
    storage: IStorage,
    remover: Optional[BackgroundRemover] = None,
) -> List[Stage]:
    """The fixed stage order: background removal, optimize, thumbnail, colors."""
    remover = remover or SubprocessBackgroundRemover.from_config(config)
    return [
        BackgroundRemovalStage(remover, storage),
        OptimizationStage(storage, config),
        ThumbnailStage(storage, config),
        ColorExtractionStage(config),
    ]
