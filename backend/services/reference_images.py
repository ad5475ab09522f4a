"""
Character reference image loading.

Verifies that a file is a readable image and detects its content type with
Pillow before it is attached to a character.
"""

import io
from pathlib import Path
from typing import Union

import structlog
from PIL import Image, UnidentifiedImageError

from pipeline.error_handler import ErrorCode, PipelineError
from pipeline.models import ReferenceImage

logger = structlog.get_logger(__name__)

# Pillow format name -> content type accepted by the generation service
SUPPORTED_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}

MAX_REFERENCE_IMAGE_BYTES = 10 * 1024 * 1024  # 10MB


def reference_image_from_bytes(data: bytes) -> ReferenceImage:
    """
    Build a ReferenceImage from raw bytes, detecting the content type.

    Raises:
        PipelineError: If the bytes are not a supported image or too large
    """
    if len(data) > MAX_REFERENCE_IMAGE_BYTES:
        raise PipelineError(
            ErrorCode.INVALID_INPUT,
            f"Reference image is {len(data)} bytes; limit is {MAX_REFERENCE_IMAGE_BYTES}",
            {"size_bytes": len(data)},
            user_message="Image file is too large. Please use an image under 10MB."
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise PipelineError(
            ErrorCode.UNSUPPORTED_FORMAT,
            f"Reference image could not be read: {e}"
        ) from e

    mime_type = SUPPORTED_FORMATS.get(image_format)
    if mime_type is None:
        raise PipelineError(
            ErrorCode.UNSUPPORTED_FORMAT,
            f"Unsupported reference image format: {image_format}",
            {"format": image_format}
        )

    return ReferenceImage(data=data, mime_type=mime_type)


def load_reference_image(path: Union[str, Path]) -> ReferenceImage:
    """
    Load a character reference image from disk.

    Args:
        path: Image file path

    Returns:
        ReferenceImage with detected mime type
    """
    path = Path(path)
    if not path.exists():
        raise PipelineError(
            ErrorCode.MISSING_REQUIRED_FIELD,
            f"Reference image not found: {path}",
            {"path": str(path)}
        )

    image = reference_image_from_bytes(path.read_bytes())
    logger.debug("reference_image_loaded", path=str(path), mime_type=image.mime_type)
    return image
