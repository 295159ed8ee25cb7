"""
Image compression used before sending images to the external API.

``compress`` downsizes so the longest side is at most ``max_dim`` and
re-encodes as JPEG. Images that cannot be decoded are passed through.
"""

import logging
from io import BytesIO
from typing import Callable

from PIL import Image, UnidentifiedImageError

from .models import ImageBlob

logger = logging.getLogger(__name__)

Compressor = Callable[[ImageBlob, int, float], ImageBlob]

# Subjects and composite backgrounds
SUBJECT_MAX_DIM = 1536
SUBJECT_QUALITY = 0.85
# Template style references
REFERENCE_MAX_DIM = 1024
REFERENCE_QUALITY = 0.75
QC_MAX_DIM = 768
QC_QUALITY = 0.7


def compress(image: ImageBlob, max_dim: int, quality: float) -> ImageBlob:
    """Downscale and re-encode an image as JPEG.

    Args:
        image: Source image
        max_dim: Maximum width and height in pixels
        quality: JPEG quality between 0 and 1

    Returns:
        Compressed JPEG image, or ``image`` unchanged if it cannot be decoded
    """
    if max_dim <= 0:
        raise ValueError("max_dim must be > 0")
    if not 0 < quality <= 1:
        raise ValueError("quality must be in (0, 1]")

    try:
        with Image.open(BytesIO(image.data)) as img:
            img.load()
            width, height = img.size
            if width > max_dim or height > max_dim:
                ratio = min(max_dim / width, max_dim / height)
                size = (max(1, round(width * ratio)), max(1, round(height * ratio)))
                img = img.resize(size, Image.LANCZOS)
            if img.mode != "RGB":
                img = img.convert("RGB")
            out = BytesIO()
            img.save(out, format="JPEG", quality=int(round(quality * 100)))
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Could not compress image, sending original: {e}")
        return image
    return ImageBlob(data=out.getvalue(), mime_type="image/jpeg")


def passthrough(image: ImageBlob, max_dim: int, quality: float) -> ImageBlob:
    """Compressor that returns its input unchanged."""
    return image
