"""
Orientation detection from image dimensions only.

Receipts are tall.  A photo noticeably wider than it is high was almost
certainly taken sideways, so it gets a 90° rotation before cropping.
Only the header is read (Pillow opens lazily), never the pixel data.
"""
import io
import logging
from dataclasses import dataclass

from PIL import Image

logger = logging.getLogger("receiptlens.orientation")

CLEARLY_HORIZONTAL = 1.5
LIKELY_HORIZONTAL = 1.2


@dataclass(frozen=True)
class OrientationResult:
    needs_rotation: bool
    angle_degrees: int
    reason: str


def orientation_for_size(width: int, height: int) -> OrientationResult:
    aspect = width / height
    if aspect > CLEARLY_HORIZONTAL:
        return OrientationResult(True, 90, f"Horizontal receipt detected (aspect ratio: {aspect:.2f})")
    if aspect > LIKELY_HORIZONTAL:
        return OrientationResult(True, 90, f"Likely horizontal receipt (aspect ratio: {aspect:.2f})")
    return OrientationResult(False, 0, f"Vertical receipt (aspect ratio: {aspect:.2f})")


def detect_orientation(image_bytes: bytes) -> OrientationResult:
    """Never raises; unreadable input means no rotation."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
        if not width or not height:
            raise ValueError("empty image")
        result = orientation_for_size(width, height)
    except Exception as e:
        logger.warning("Orientation detection failed: %s", e)
        return OrientationResult(False, 0, "Detection failed")
    logger.debug("%s", result.reason)
    return result
