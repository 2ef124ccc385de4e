"""
Shared fixtures for backend tests.

Images are drawn with Pillow so every geometry test knows exactly where the
"paper" is.  The cache gets a fresh SQLite file under tmp_path.
"""
import io

import pytest
from PIL import Image, ImageDraw

from services.cache_service import SQLiteCache
from services.config import PipelineConfig

# ── Synthetic receipt photo ──────────────────────────────────────────────────

PAPER_BOX = (310, 210, 890, 1390)   # left, top, right, bottom on a 1200×1600 photo


def draw_receipt_photo(size=(1200, 1600), paper=PAPER_BOX) -> Image.Image:
    """Light paper with dark text bars on a dark table."""
    img = Image.new("RGB", size, (50, 50, 50))
    draw = ImageDraw.Draw(img)
    draw.rectangle((paper[0], paper[1], paper[2] - 1, paper[3] - 1), fill=(245, 245, 245))
    left, top, right, bottom = paper
    y = top + 60
    while y < bottom - 80:
        draw.rectangle((left + 40, y, right - 120, y + 14), fill=(20, 20, 20))
        y += 50
    return img


def to_bytes(img: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def receipt_photo():
    return draw_receipt_photo()


@pytest.fixture
def receipt_photo_bytes(receipt_photo):
    return to_bytes(receipt_photo)


# ── Pipeline collaborators ───────────────────────────────────────────────────

@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        anthropic_api_key="sk-test",
        upload_dir=str(tmp_path / "uploads"),
        pipeline_timeout=30,
    )


@pytest.fixture
def cache(tmp_path):
    return SQLiteCache(str(tmp_path / "cache.db"))
