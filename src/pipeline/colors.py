"""
Color Extraction

Ranks the exact colors of a downsampled rendition of a garment image.
Near-white pixels (the removed background once flattened) are excluded.
"""

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple, Union

from PIL import Image

from src.core.exceptions import ColorExtractionError
from src.core.logging import get_logger
from src.pipeline.imaging import flatten_alpha

logger = get_logger(__name__)

FALLBACK_GRAY = "#cccccc"


@dataclass(frozen=True)
class ColorPalette:
    dominant_color: str
    colors: List[str] = field(default_factory=list)

    @classmethod
    def fallback(cls, color: str = FALLBACK_GRAY) -> "ColorPalette":
        return cls(dominant_color=color, colors=[color])


def rgb_to_hex(r: int, g: int, b: int) -> str:
    return f"#{r:02x}{g:02x}{b:02x}"


def count_colors(pixels: bytes, white_threshold: int = 240) -> Counter:
    """Bucket an RGB byte buffer by exact hex value, skipping near-white pixels."""
    counts: Counter = Counter()
    for i in range(0, len(pixels) - 2, 3):
        r, g, b = pixels[i], pixels[i + 1], pixels[i + 2]
        if r > white_threshold and g > white_threshold and b > white_threshold:
            continue
        counts[rgb_to_hex(r, g, b)] += 1
    return counts


def _sample_pixels(image_path: Union[str, Path], sample_size: Tuple[int, int]) -> bytes:
    with Image.open(image_path) as image:
        image.load()
        sample = image.copy()
    sample.thumbnail(sample_size, Image.Resampling.BILINEAR)
    return flatten_alpha(sample).tobytes()


def extract_colors(
    image_path: Union[str, Path],
    sample_size: int = 100,
    white_threshold: int = 240,
    palette_size: int = 5,
    fallback: str = FALLBACK_GRAY,
) -> ColorPalette:
    """
    Extract the dominant color and up to `palette_size` colors from an image.

    Never raises: any failure, or an image with no qualifying pixel, yields the
    fallback palette.
    """
    try:
        try:
            pixels = _sample_pixels(image_path, (sample_size, sample_size))
        except Exception as e:
            raise ColorExtractionError(f"Could not sample {image_path}: {e}")

        counts = count_colors(pixels, white_threshold)
        if not counts:
            raise ColorExtractionError("No non-background pixels to rank")

        colors = [color for color, _ in counts.most_common(palette_size)]
        return ColorPalette(dominant_color=colors[0], colors=colors)

    except ColorExtractionError as e:
        logger.warning("color_extraction_fallback", image_path=str(image_path), reason=e.message)
        return ColorPalette.fallback(fallback)
