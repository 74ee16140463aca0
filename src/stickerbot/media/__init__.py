"""Media conversion: images to stickers, videos to looping clips."""

from .errors import (
    EmptyPayloadError,
    MediaTransformError,
    PayloadTooLargeError,
    UnsupportedFormatError,
)
from .transform import (
    ImageMetadata,
    StickerOptions,
    make_clip,
    make_sticker,
    read_metadata,
    validate_payload,
)

__all__ = [
    "EmptyPayloadError",
    "ImageMetadata",
    "MediaTransformError",
    "PayloadTooLargeError",
    "StickerOptions",
    "UnsupportedFormatError",
    "make_clip",
    "make_sticker",
    "read_metadata",
    "validate_payload",
]
