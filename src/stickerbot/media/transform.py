"""Sticker and clip conversion.

Stickers are always a fixed square canvas: the source is fitted inside it
with its aspect ratio preserved and the remaining area left fully
transparent, then encoded as lossy WebP. Clips are not re-encoded; the
looping behavior is the `loop_playback` flag set when the reply is sent.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from ..core.config import MediaConfig
from .errors import EmptyPayloadError, PayloadTooLargeError, UnsupportedFormatError

DEFAULT_STICKER_SIZE = 512
DEFAULT_QUALITY = 90
DEFAULT_EFFORT = 4
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
TRANSPARENT = (0, 0, 0, 0)


@dataclass(frozen=True)
class StickerOptions:
    size: int = DEFAULT_STICKER_SIZE
    quality: int = DEFAULT_QUALITY
    effort: int = DEFAULT_EFFORT
    background: tuple[int, int, int, int] = TRANSPARENT
    max_bytes: int = DEFAULT_MAX_BYTES

    @classmethod
    def from_media_config(cls, media: MediaConfig) -> "StickerOptions":
        return cls(
            size=media.sticker_size,
            quality=media.sticker_quality,
            effort=media.sticker_effort,
            max_bytes=media.max_file_size,
        )


@dataclass(frozen=True)
class ImageMetadata:
    format: Optional[str]
    width: int
    height: int
    mode: str
    is_animated: bool = False


def validate_payload(data: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
    """Reject empty and oversized buffers before any decode attempt."""

    if not data:
        raise EmptyPayloadError()
    if len(data) > max_bytes:
        raise PayloadTooLargeError(len(data), max_bytes)


def _open_image(data: bytes, *, load: bool = True) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        if load:
            image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise UnsupportedFormatError("Invalid image format", detail=str(exc)) from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise UnsupportedFormatError("Invalid image format", detail=str(exc)) from exc
    return image


def read_metadata(data: bytes) -> ImageMetadata:
    """Identify the format and dimensions from the header without decoding pixels."""

    image = _open_image(data, load=False)
    try:
        return ImageMetadata(
            format=image.format,
            width=image.width,
            height=image.height,
            mode=image.mode,
            is_animated=bool(getattr(image, "is_animated", False)),
        )
    finally:
        image.close()


def _fit_inside(width: int, height: int, size: int) -> tuple[int, int]:
    scale = min(size / width, size / height)
    return (
        min(size, max(1, round(width * scale))),
        min(size, max(1, round(height * scale))),
    )


def make_sticker(data: bytes, options: Optional[StickerOptions] = None) -> bytes:
    """Convert an image buffer into a `size x size` WebP sticker."""

    opts = options or StickerOptions()
    validate_payload(data, opts.max_bytes)
    metadata = read_metadata(data)
    source = _open_image(data)
    try:
        if metadata.is_animated:
            source.seek(0)
        try:
            oriented = ImageOps.exif_transpose(source)
        except (OSError, ValueError, SyntaxError) as exc:
            raise UnsupportedFormatError(
                "Invalid image format", detail=str(exc)
            ) from exc
        rgba = oriented.convert("RGBA")
    finally:
        source.close()

    target = _fit_inside(rgba.width, rgba.height, opts.size)
    if rgba.size != target:
        rgba = rgba.resize(target, Image.Resampling.LANCZOS)

    canvas = Image.new("RGBA", (opts.size, opts.size), opts.background)
    offset = ((opts.size - rgba.width) // 2, (opts.size - rgba.height) // 2)
    canvas.paste(rgba, offset)

    buffer = io.BytesIO()
    canvas.save(
        buffer,
        format="WEBP",
        quality=opts.quality,
        method=opts.effort,
        exact=True,
    )
    return buffer.getvalue()


def make_clip(data: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """Return the video buffer unchanged after size validation."""

    validate_payload(data, max_bytes)
    return data
