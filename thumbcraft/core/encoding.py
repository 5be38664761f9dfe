"""
Encoding adapter: turns an uploaded image file into an EncodedImage.

The bytes are opened with Pillow so that anything that is not a real,
decodable PNG/JPEG/WEBP image is rejected before it reaches the pipeline.
"""

import asyncio
import io
import logging
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from ..models import EncodedImage
from .constants import ACCEPTED_MEDIA_TYPES, MAX_UPLOAD_BYTES, PIL_FORMAT_MEDIA_TYPES
from .errors import EncodingError

logger = logging.getLogger(__name__)


def detect_media_type(image_bytes: bytes) -> str:
    """Decode the image with Pillow and return its media type."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise EncodingError(f"File is not a decodable image: {e}")

    media_type = PIL_FORMAT_MEDIA_TYPES.get(image_format or "")
    if media_type not in ACCEPTED_MEDIA_TYPES:
        raise EncodingError(
            f"Unsupported image format '{image_format}'. Accepted: {', '.join(ACCEPTED_MEDIA_TYPES)}"
        )
    return media_type


def encode_image_bytes(image_bytes: bytes, media_type: Optional[str] = None) -> EncodedImage:
    """
    Encode raw image bytes for transport.

    Args:
        image_bytes: The uploaded file content.
        media_type: Declared media type (e.g. from the upload). It must agree
            with what the bytes actually decode as.

    Raises:
        EncodingError: empty, too large, undecodable or unsupported input.
    """
    if not image_bytes:
        raise EncodingError("Image file is empty")
    if len(image_bytes) > MAX_UPLOAD_BYTES:
        raise EncodingError(
            f"Image is {len(image_bytes)} bytes; the limit is {MAX_UPLOAD_BYTES} bytes"
        )

    detected = detect_media_type(image_bytes)
    if media_type and media_type.lower() != detected:
        raise EncodingError(f"Declared media type '{media_type}' does not match file content '{detected}'")

    logger.debug(f"Encoded {len(image_bytes)} bytes as {detected}")
    return EncodedImage.from_bytes(image_bytes, detected)


def _read_file(path: Path) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise EncodingError(f"Could not read image file {path}: {e}")


async def encode_image_file(path: Union[str, Path], media_type: Optional[str] = None) -> EncodedImage:
    """Read a file without blocking the event loop, then encode it."""
    image_bytes = await asyncio.to_thread(_read_file, Path(path))
    return encode_image_bytes(image_bytes, media_type)
