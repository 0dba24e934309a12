"""
Resizer / Encoder

Pure Pillow helpers shared by the optimization and thumbnail stages, plus the
metadata inspection used at ingestion. All functions take and return paths;
error translation into stage errors happens in the stages.
"""

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

from PIL import Image, ImageOps

FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
}

# Container variants reported under their own name; camera JPEGs decode as MPO
FORMAT_ALIASES = {
    "MPO": "JPEG",
}

# Formats that cannot carry an alpha channel
_OPAQUE_FORMATS = {"JPEG"}


@dataclass(frozen=True)
class ImageInfo:
    """Metadata of a decoded image file."""
    format: str
    width: int
    height: int
    size: int

    @property
    def mime_type(self) -> str:
        return Image.MIME.get(self.format, f"image/{self.format.lower()}")

    @property
    def extension(self) -> str:
        return extension_for(self.format)


def normalize_format(fmt: str) -> str:
    return FORMAT_ALIASES.get(fmt, fmt)


def extension_for(fmt: str) -> str:
    return FORMAT_EXTENSIONS.get(fmt.upper(), fmt.lower())


def inspect_bytes(data: bytes) -> ImageInfo:
    """Decode an in-memory image far enough to read its metadata.

    Raises whatever Pillow raises for undecodable input.
    """
    with Image.open(io.BytesIO(data)) as image:
        image.verify()
        fmt = normalize_format(image.format)
        width, height = image.size
    return ImageInfo(format=fmt, width=width, height=height, size=len(data))


def inspect_file(path: Union[str, Path]) -> ImageInfo:
    path = Path(path)
    with Image.open(path) as image:
        fmt = normalize_format(image.format)
        width, height = image.size
    return ImageInfo(format=fmt, width=width, height=height, size=path.stat().st_size)


def flatten_alpha(image: Image.Image, background: Tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Composite an image with transparency onto a solid background, returning RGB."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    return image.convert("RGB")


def encode(
    image: Image.Image,
    path: Union[str, Path],
    fmt: str,
    quality: int,
    lossless: bool = False,
) -> Path:
    """Write an image in the requested format."""
    path = Path(path)
    fmt = fmt.upper()

    if fmt in _OPAQUE_FORMATS:
        image = flatten_alpha(image)
    elif image.mode not in ("RGB", "RGBA", "L", "LA"):
        image = image.convert("RGBA")

    if fmt == "PNG":
        # PNG is always lossless; quality has no meaning for it in Pillow
        image.save(path, "PNG", optimize=True)
    elif fmt == "WEBP":
        image.save(path, "WEBP", quality=quality, lossless=lossless, method=4)
    elif fmt == "JPEG":
        image.save(path, "JPEG", quality=quality, optimize=True)
    else:
        image.save(path, fmt)
    return path


def optimize_image(
    source: Union[str, Path],
    destination: Union[str, Path],
    max_size: Tuple[int, int] = (1200, 1200),
    fmt: str = "PNG",
    quality: int = 85,
) -> Path:
    """Fit inside max_size keeping aspect ratio, never upscaling, and re-encode losslessly."""
    with Image.open(source) as image:
        image.load()
        resized = image.copy()
    # Image.thumbnail only ever shrinks
    resized.thumbnail(max_size, Image.Resampling.LANCZOS)
    return encode(resized, destination, fmt, quality, lossless=True)


def create_thumbnail(
    source: Union[str, Path],
    destination: Union[str, Path],
    size: Tuple[int, int] = (300, 300),
    fmt: str = "WEBP",
    quality: int = 80,
) -> Path:
    """Cover-fit crop to exactly `size` and re-encode lossy."""
    with Image.open(source) as image:
        image.load()
        cropped = ImageOps.fit(image, size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
    return encode(cropped, destination, fmt, quality, lossless=False)


def discard(path: Union[str, Path, None]) -> None:
    """Remove a partially written output, if any."""
    if path is None:
        return
    Path(path).unlink(missing_ok=True)
