"""
Image Service — geometric normalization of receipt photos.

Pipeline (all in-process, Pillow + numpy):
  decode → orientation fix → resize (never upscale) → run every crop strategy
  → score candidates → keep the best → minimal re-encode.

No sharpening, contrast, brightness or grayscale changes are made to the
output; the vision model reads the original pixels better than any
"enhanced" version.  When a document-processor client is supplied and
enabled, it is tried first and the in-process pipeline becomes the fallback.

Only undecodable input raises (GeometryError).  Every other failure degrades:
no strategy succeeds → 8% margin crop → resized image untouched.
"""
import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from PIL import Image, ImageStat

from services.crop_strategies import STRATEGIES, CropBox, CropStrategyError
from services.orientation_service import orientation_for_size

logger = logging.getLogger("receiptlens.image")

# Register HEIC/HEIF support via pillow-heif if available
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed — HEIC files will not be supported")

MAX_WIDTH = 4000
MAX_HEIGHT = 4000
CONSERVATIVE_MARGIN = 0.08


class GeometryError(Exception):
    """Raised when the input bytes cannot be decoded as an image."""
    pass


@dataclass
class NormalizeOptions:
    max_width: int = MAX_WIDTH
    max_height: int = MAX_HEIGHT
    output_format: str = "png"          # "png" (lossless) or "jpeg"
    jpeg_quality: int = 95
    file_name: Optional[str] = None     # shared-upload name for the document processor


@dataclass
class CropCandidate:
    strategy_name: str
    image: Image.Image
    box: CropBox
    index: int
    score: float = 0.0

    @property
    def width(self) -> int:
        return self.image.size[0]

    @property
    def height(self) -> int:
        return self.image.size[1]


@dataclass
class NormalizedImage:
    data: bytes
    width: int
    height: int
    format: str
    strategy: str
    rotated: bool = False
    processed_file_name: Optional[str] = None
    scores: dict[str, float] = field(default_factory=dict)


# ── Decoding ──────────────────────────────────────────────────────────────────

def load_image(image_bytes: bytes) -> Image.Image:
    """
    Decode to RGB.  EXIF orientation is deliberately not applied: the
    aspect-ratio detector decides rotation on the stored pixel layout.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except Exception as e:
        msg = str(e)
        if ("heif" in msg.lower() or "heic" in msg.lower()) and not HEIF_AVAILABLE:
            raise GeometryError("HEIC/HEIF files require pillow-heif") from e
        raise GeometryError(f"Cannot open image: {msg}") from e

    # Convert HEIF/palette/CMYK/alpha modes → RGB
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def resize_within(img: Image.Image, max_width: int, max_height: int) -> Image.Image:
    """Aspect-preserving shrink into the box; smaller images are returned as-is."""
    w, h = img.size
    if w <= max_width and h <= max_height:
        return img
    resized = img.copy()
    resized.thumbnail((max_width, max_height), Image.LANCZOS)
    logger.debug("Resized image %d×%d → %d×%d", w, h, resized.size[0], resized.size[1])
    return resized


# ── Scoring ───────────────────────────────────────────────────────────────────

def score_candidate(image: Image.Image) -> float:
    """
    Heuristic quality score for a crop.  Higher is better.

    Rewards contrast, a tall receipt-like aspect ratio, mid-range brightness
    and a moderate pixel count; penalises tiny, huge, very dark or blown-out
    crops.
    """
    width, height = image.size
    area = width * height
    score = 0.0

    if area < 200_000:
        score -= 15
    if area < 100_000:
        score -= 30
    if area > 2_500_000:
        score -= 10

    stat = ImageStat.Stat(image)
    contrast = (sum(stat.stddev) / len(stat.stddev)) / 128
    score += contrast * 40

    aspect = width / height
    if 0.3 <= aspect <= 0.7:
        score += 25
    elif 0.2 <= aspect <= 0.9:
        score += 10
    else:
        score -= 10

    brightness = (sum(stat.mean) / len(stat.mean)) / 255
    if brightness < 0.15 or brightness > 0.90:
        score -= 25
    elif 0.3 < brightness < 0.7:
        score += 10

    if 300_000 <= area <= 2_000_000:
        score += 15

    return score


def select_best_candidate(candidates: list[CropCandidate]) -> Optional[CropCandidate]:
    """Highest score wins; ties go to the candidate generated first."""
    if not candidates:
        return None
    return max(candidates, key=lambda c: (c.score, -c.index))


def generate_candidates(
    image: Image.Image,
    strategies: Optional[list[tuple[str, Callable[[Image.Image], CropBox]]]] = None,
) -> list[CropCandidate]:
    """Run every strategy; failures are logged and left out."""
    candidates = []
    for index, (name, strategy) in enumerate(strategies if strategies is not None else STRATEGIES):
        try:
            box = strategy(image)
            cropped = image.crop(box)
            if cropped.size[0] < 1 or cropped.size[1] < 1:
                raise CropStrategyError(f"Empty crop {box}")
        except Exception as e:
            logger.debug("Strategy %s failed: %s", name, e)
            continue
        candidate = CropCandidate(strategy_name=name, image=cropped, box=box, index=index)
        candidate.score = score_candidate(cropped)
        logger.debug("Strategy %s → %dx%d score=%.1f",
                     name, candidate.width, candidate.height, candidate.score)
        candidates.append(candidate)
    return candidates


def conservative_crop(image: Image.Image, margin: float = CONSERVATIVE_MARGIN) -> Image.Image:
    w, h = image.size
    dx, dy = int(w * margin), int(h * margin)
    if w - 2 * dx < 1 or h - 2 * dy < 1:
        raise CropStrategyError("Image too small for a margin crop")
    return image.crop((dx, dy, w - dx, h - dy))


# ── Encoding ──────────────────────────────────────────────────────────────────

def encode_image(img: Image.Image, options: NormalizeOptions) -> tuple[bytes, str]:
    """Minimal enhancement: shrink only if still oversized, then re-encode."""
    img = resize_within(img, options.max_width, options.max_height)
    buf = io.BytesIO()
    if options.output_format.lower() in ("jpeg", "jpg"):
        img.save(buf, format="JPEG", quality=options.jpeg_quality, subsampling=0)
        return buf.getvalue(), "jpeg"
    img.save(buf, format="PNG", compress_level=6)
    return buf.getvalue(), "png"


# ── Pipeline ──────────────────────────────────────────────────────────────────

def normalize_in_process(image_bytes: bytes, options: Optional[NormalizeOptions] = None) -> NormalizedImage:
    """CPU-bound normalization.  Run it in a worker thread from async code."""
    options = options or NormalizeOptions()
    img = load_image(image_bytes)

    orientation = orientation_for_size(*img.size)
    if orientation.needs_rotation:
        logger.info("Rotating %d° clockwise: %s", orientation.angle_degrees, orientation.reason)
        img = img.transpose(Image.Transpose.ROTATE_270)

    img = resize_within(img, options.max_width, options.max_height)

    candidates = generate_candidates(img)
    best = select_best_candidate(candidates)
    if best is not None:
        chosen, strategy = best.image, best.strategy_name
        logger.info("Selected crop strategy %s (score %.1f of %d candidates)",
                    strategy, best.score, len(candidates))
    else:
        logger.warning("All crop strategies failed, using conservative crop")
        try:
            chosen, strategy = conservative_crop(img), "conservative"
        except CropStrategyError as e:
            logger.warning("Conservative crop failed (%s), using resized image", e)
            chosen, strategy = img, "none"

    data, fmt = encode_image(chosen, options)
    return NormalizedImage(
        data=data,
        width=chosen.size[0],
        height=chosen.size[1],
        format=fmt,
        strategy=strategy,
        rotated=orientation.needs_rotation,
        scores={c.strategy_name: round(c.score, 2) for c in candidates},
    )


async def normalize_receipt_image(
    image_bytes: bytes,
    options: Optional[NormalizeOptions] = None,
    processor=None,
) -> NormalizedImage:
    """
    Normalize a receipt photo.  The document-processor microservice is tried
    first when one is passed in, enabled, and the upload has a shared file
    name; any failure there falls back to the in-process pipeline.
    """
    options = options or NormalizeOptions()
    if processor is not None and processor.enabled and options.file_name:
        try:
            return await processor.process_receipt(options.file_name)
        except Exception as e:
            logger.warning("Document processor failed (%s), using in-process pipeline", e)

    return await asyncio.to_thread(normalize_in_process, image_bytes, options)
