"""
Crop strategies for isolating the receipt body in a photo.

Each strategy takes a decoded RGB image and returns a crop box
(left, top, right, bottom) in pixel coordinates, or raises
CropStrategyError when it cannot produce a usable crop.  Strategies do not
modify the image they receive.

  trim            — strip a near-white border
  edge-low-blur   — Sobel edges after a light blur, density-based bounds
  edge-high-blur  — same with a heavy blur + median filter, auto-trim first
  smart-content   — grid variance, grown out from the busiest cell
"""
import logging
from functools import partial
from typing import Callable

import numpy as np
from PIL import Image, ImageFilter, ImageOps

logger = logging.getLogger("receiptlens.crop")

CropBox = tuple[int, int, int, int]   # left, top, right, bottom

TRIM_THRESHOLD = 10
TRIM_MIN_REMOVED = 0.05
TRIM_MAX_REMOVED = 0.70

EDGE_THRESHOLD = 80
EDGE_MIN_FRACTION = 0.20
EDGE_PADDING = 0.02
EDGE_MIN_PADDING = 10
DENSITY_FLOOR = 5
DENSITY_RUN = 3

GRID_SIZE = 20
VARIANCE_KEEP = 0.30
SMART_MIN_FRACTION = 0.50
SMART_MARGIN_FRACTION = 0.10
SMART_MARGIN_MAX = 50


class CropStrategyError(Exception):
    """A strategy could not produce a crop; the candidate is skipped."""
    pass


def _removed_fraction(size: tuple[int, int], box: CropBox) -> float:
    w, h = size
    kept = (box[2] - box[0]) * (box[3] - box[1])
    return (w * h - kept) / (w * h)


# ── Trim ──────────────────────────────────────────────────────────────────────

def whitespace_box(image: Image.Image, threshold: int = TRIM_THRESHOLD) -> CropBox:
    """Bounding box of everything that is not near-white."""
    arr = np.asarray(image.convert("RGB"), dtype=np.int16)
    ink = (255 - arr).max(axis=2) > threshold
    rows = np.flatnonzero(ink.any(axis=1))
    cols = np.flatnonzero(ink.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        raise CropStrategyError("Image is blank")
    return int(cols[0]), int(rows[0]), int(cols[-1]) + 1, int(rows[-1]) + 1


def trim_whitespace(image: Image.Image) -> CropBox:
    box = whitespace_box(image)
    removed = _removed_fraction(image.size, box)
    if removed < TRIM_MIN_REMOVED or removed > TRIM_MAX_REMOVED:
        raise CropStrategyError(
            f"Trim percentage {removed * 100:.1f}% is outside acceptable range"
        )
    return box


# ── Edge detection ────────────────────────────────────────────────────────────

def _sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """|Sobel-X| + |Sobel-Y| with edge-replicated borders."""
    p = np.pad(gray.astype(np.float32), 1, mode="edge")
    gx = (p[:-2, 2:] + 2 * p[1:-1, 2:] + p[2:, 2:]) - (p[:-2, :-2] + 2 * p[1:-1, :-2] + p[2:, :-2])
    gy = (p[2:, :-2] + 2 * p[2:, 1:-1] + p[2:, 2:]) - (p[:-2, :-2] + 2 * p[:-2, 1:-1] + p[:-2, 2:])
    return np.abs(gx) + np.abs(gy)


def _first_run(density: np.ndarray, threshold: float) -> int | None:
    """Index where the first run of DENSITY_RUN entries above threshold starts."""
    run = 0
    for i, value in enumerate(density):
        if value > threshold:
            run += 1
            if run >= DENSITY_RUN:
                return i - DENSITY_RUN + 1
        else:
            run = 0
    return None


def find_content_boundaries(mask: np.ndarray) -> CropBox:
    """
    Bounds of the region with dense "on" pixels in a binary edge mask.

    A row (column) counts as content when its on-pixel count exceeds
    max(5, median + 0.5 * stddev) of all rows (columns), and a boundary only
    lands on a run of at least three such rows.  Sides with no run keep the
    full image extent.
    """
    height, width = mask.shape
    row_density = mask.sum(axis=1)
    col_density = mask.sum(axis=0)

    def threshold(density: np.ndarray) -> float:
        return max(DENSITY_FLOOR, float(np.median(density)) + 0.5 * float(np.std(density)))

    row_t = threshold(row_density)
    col_t = threshold(col_density)

    top = _first_run(row_density, row_t)
    bottom = _first_run(row_density[::-1], row_t)
    left = _first_run(col_density, col_t)
    right = _first_run(col_density[::-1], col_t)

    top = 0 if top is None else top
    left = 0 if left is None else left
    bottom = height if bottom is None else height - bottom
    right = width if right is None else width - right
    logger.debug("Content bounds l=%d t=%d r=%d b=%d (row_t=%.1f col_t=%.1f)",
                 left, top, right, bottom, row_t, col_t)
    return left, top, max(left + 1, right), max(top + 1, bottom)


def edge_detection_crop(
    image: Image.Image,
    blur_sigma: float,
    denoise: bool = False,
    auto_trim: bool = False,
) -> CropBox:
    if auto_trim:
        try:
            box = whitespace_box(image)
            removed = _removed_fraction(image.size, box)
            if TRIM_MIN_REMOVED < removed < TRIM_MAX_REMOVED:
                logger.debug("Automatic trim removed %.1f%%", removed * 100)
                return box
        except CropStrategyError:
            pass

    gray = image.convert("L").filter(ImageFilter.GaussianBlur(blur_sigma))
    gray = ImageOps.autocontrast(gray)
    if denoise:
        gray = gray.filter(ImageFilter.MedianFilter(5))

    magnitude = _sobel_magnitude(np.asarray(gray))
    peak = float(magnitude.max())
    if peak <= 0:
        raise CropStrategyError("No edges found")
    normalized = magnitude * (255.0 / peak)
    mask = normalized >= EDGE_THRESHOLD
    left, top, right, bottom = find_content_boundaries(mask)

    width, height = image.size
    box_w, box_h = right - left, bottom - top
    if box_w < width * EDGE_MIN_FRACTION or box_h < height * EDGE_MIN_FRACTION:
        raise CropStrategyError(f"Detected boundaries too small ({box_w}x{box_h})")

    pad_x = max(EDGE_MIN_PADDING, int(box_w * EDGE_PADDING))
    pad_y = max(EDGE_MIN_PADDING, int(box_h * EDGE_PADDING))
    return (
        max(0, left - pad_x),
        max(0, top - pad_y),
        min(width, right + pad_x),
        min(height, bottom + pad_y),
    )


# ── Smart content ─────────────────────────────────────────────────────────────

def _cell_variance(gray: np.ndarray, cell: int) -> np.ndarray:
    rows, cols = gray.shape[0] // cell, gray.shape[1] // cell
    if rows == 0 or cols == 0:
        raise CropStrategyError("Image smaller than one grid cell")
    cells = gray[:rows * cell, :cols * cell].astype(np.float32)
    cells = cells.reshape(rows, cell, cols, cell).swapaxes(1, 2)
    return cells.var(axis=(2, 3))


def conservative_margin_box(size: tuple[int, int]) -> CropBox:
    width, height = size
    margin = int(min(width * SMART_MARGIN_FRACTION, height * SMART_MARGIN_FRACTION, SMART_MARGIN_MAX))
    return margin, margin, width - margin, height - margin


def smart_content_crop(image: Image.Image) -> CropBox:
    gray = np.asarray(image.convert("L"))
    variance = _cell_variance(gray, GRID_SIZE)
    best_y, best_x = np.unravel_index(int(np.argmax(variance)), variance.shape)
    keep = variance[best_y, best_x] * VARIANCE_KEEP

    # grow along the best row, then along the best column, while neighbours stay busy
    min_x = max_x = best_x
    while min_x > 0 and variance[best_y, min_x - 1] > keep:
        min_x -= 1
    while max_x < variance.shape[1] - 1 and variance[best_y, max_x + 1] > keep:
        max_x += 1
    min_y = max_y = best_y
    while min_y > 0 and variance[min_y - 1, best_x] > keep:
        min_y -= 1
    while max_y < variance.shape[0] - 1 and variance[max_y + 1, best_x] > keep:
        max_y += 1

    box = (
        int(min_x * GRID_SIZE),
        int(min_y * GRID_SIZE),
        int((max_x + 1) * GRID_SIZE),
        int((max_y + 1) * GRID_SIZE),
    )
    width, height = image.size
    if box[2] - box[0] < width * SMART_MIN_FRACTION or box[3] - box[1] < height * SMART_MIN_FRACTION:
        logger.debug("Smart content area %s too small, using margin crop", box)
        return conservative_margin_box(image.size)
    return box


# Generation order doubles as the scorer's tie-break.
STRATEGIES: list[tuple[str, Callable[[Image.Image], CropBox]]] = [
    ("trim", trim_whitespace),
    ("edge-low-blur", partial(edge_detection_crop, blur_sigma=2)),
    ("edge-high-blur", partial(edge_detection_crop, blur_sigma=8, denoise=True, auto_trim=True)),
    ("smart-content", smart_content_crop),
]
