"""
Extraction Service — receipt photo → reconciled receipt.

  1. Normalize geometry (microservice or in-process), bounded by a timeout.
     Failure falls through to the raw bytes.
  2. Hash the processed bytes + locale and check the cache.
  3. Send the image to Claude Vision (by public URL when one is available,
     otherwise inline base64 as a size-capped JPEG) and parse the JSON it
     returns.
  4. Retry ladder: unparseable / errored / truncated → retry the primary
     model with a larger token budget → fall back to the secondary model.
  5. Normalize categories and VAT rows, reconcile, cache, return.

ReceiptExtractor.extract never raises (except cancellation); every failure
comes back as ExtractionResult(success=False, error=...).
"""
import asyncio
import base64
import io
import json
import logging
import math
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import anthropic
from PIL import Image, ImageOps

from models.schemas import DraftReceipt, ExtractionResult, ReconciledReceipt
from services.cache_service import receipt_cache_key
from services.category_service import (
    clean_vat_info,
    normalize_product_category,
    normalize_receipt_category,
)
from services.config import PipelineConfig
from services.image_service import NormalizedImage, NormalizeOptions, normalize_receipt_image
from services.reconcile_service import reconcile

logger = logging.getLogger("receiptlens.extract")

EXTRACTION_METHOD = "ai-unified-image"
DEFAULT_CURRENCY = "USD"
RETRY_GROWTH = 1.6
RETRY_MIN_EXTRA = 400
RETRY_DEFAULT_EXTRA = 600

VISION_MAX_DIM = 1568
VISION_JPEG_QUALITIES = (92, 85, 75, 60)
MAX_INLINE_BYTES = 3_750_000        # raw bytes; base64 of this stays under 5 MB


class ExtractionServiceError(Exception):
    """Raised when the Claude API call fails (network, auth, missing key)."""
    pass


@dataclass
class ModelResponse:
    text: str
    stop_reason: Optional[str] = None
    output_tokens: int = 0


SYSTEM_PROMPT = """You are an expert receipt analysis AI. Analyze the receipt image and extract ALL information in a single response.

IMPORTANT: Respond ONLY with valid, minified JSON following the schema below. No code fences, no prose. Output categories use the internal English values.

OUTPUT FORMAT:
{{
  "receiptCategory": "grocery|transport|food|fuel|others",
  "merchantName": "Store/merchant name",
  "purchaseDate": "2024-01-15" or null,
  "purchaseDateRaw": "1/10/2025" or the original notation,
  "currency": "ISO 4217 code, e.g. USD|EUR|GBP|COP|MXN",
  "country": "ISO country code, e.g. US|NL|ES|DE",
  "paymentMethod": "cash|card|mobile|voucher|other",
  "cardType": "Visa|Mastercard|American Express|..." or null,
  "totals": {{"subtotal": 45.50, "tax": 3.64, "total": 49.14, "discount": 0}},
  "vatInfo": {{"21": {{"amount": 3.64, "base": 17.33}}}},
  "discountInfo": null,
  "products": [
    {{
      "name": "Generic product name in English",
      "category": "food|beverages|cleaning|personal_care|pharmacy|others",
      "quantity": 1.5,
      "unitPrice": 2.50,
      "totalPrice": 3.75,
      "originalText": "the line(s) used to infer quantity/price, e.g. '2 x 2,99'"
    }}
  ]
}}

RULES:
- Quantity multipliers like '2 x 2,99' or '3 X 1,50': quantity = multiplier, unitPrice = single-unit price, totalPrice = quantity * unitPrice.
- Include only VAT rates with amounts > 0; never include 0%.
- If there is no explicit total, compute subtotal + tax - discount.
- Return purchaseDateRaw exactly as printed.  Normalize purchaseDate to YYYY-MM-DD using country/currency context (US: mm/dd, EU: dd/mm).
- Use numbers (not strings) for numeric fields, rounded to two decimals.  Use null for unknown values.
- Ignore non-product lines.  Keep "products" empty if none are readable.

The user's locale is "{locale}"; use it only as a hint for number and date formats."""

USER_PROMPT = "Extract this receipt as JSON."


# ── Response parsing ──────────────────────────────────────────────────────────

def _balanced_spans(text: str):
    """Yield each top-level {...} span, skipping braces inside JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = None
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i + 1
                    break
        if end is None:
            return
        yield text[start:end]
        start = text.find("{", end)


def extract_json_object(text: str) -> Optional[dict]:
    """Parse the model's reply into a dict, tolerating fences and chatter."""
    if not text:
        return None
    raw = text.strip()
    # Strip markdown fences if present
    raw = re.sub(r'^```[a-zA-Z]*\n?', '', raw)
    raw = re.sub(r'\n?```$', '', raw)
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass
    for span in _balanced_spans(raw):
        try:
            data = json.loads(span)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def adaptive_budget(base: int, observed: Optional[int], ceiling: int) -> int:
    """Token budget for a retry: grow from what the first attempt used."""
    grown = math.ceil(observed * RETRY_GROWTH) if observed else base + RETRY_DEFAULT_EXTRA
    return min(max(grown, base + RETRY_MIN_EXTRA), ceiling)


# ── Image input ───────────────────────────────────────────────────────────────

def detect_media_type(image_bytes: bytes) -> str:
    # Detect media type from magic bytes
    if image_bytes[:4] == b'\x89PNG':
        return "image/png"
    if image_bytes[:3] == b'\xff\xd8\xff':
        return "image/jpeg"
    if image_bytes[:4] == b'RIFF' and image_bytes[8:12] == b'WEBP':
        return "image/webp"
    if image_bytes[:4] == b'GIF8':
        return "image/gif"
    return "image/png"


def prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + compress an image for inline (base64) sending:
    - long side ≤ 1568px (Claude Vision's optimal size for receipts)
    - JPEG q92, stepping quality down until the payload fits the 5 MB limit
    Returns (compressed_bytes, media_type).
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        # Normalise EXIF orientation and mode
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        w, h = img.size
        long_side = max(w, h)
        if long_side > VISION_MAX_DIM:
            scale = VISION_MAX_DIM / long_side
            img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

        for quality in VISION_JPEG_QUALITIES:
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=quality, optimize=True)
            compressed = buf.getvalue()
            if len(compressed) <= MAX_INLINE_BYTES:
                break
        logger.debug("Image size: %d KB → %d KB (q%d)",
                     len(image_bytes) // 1024, len(compressed) // 1024, quality)
        return compressed, "image/jpeg"
    except Exception as e:
        logger.warning("Image prep failed (%s), sending original", e)
        return image_bytes, detect_media_type(image_bytes)


def build_image_block(image_bytes: bytes, image_url: Optional[str] = None) -> dict:
    """URL source when one is given; otherwise a size-capped base64 JPEG."""
    if image_url:
        return {"type": "image", "source": {"type": "url", "url": image_url}}
    data, media_type = prepare_image_for_vision(image_bytes)
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.standard_b64encode(data).decode(),
        },
    }


# ── Claude call + retry ladder ────────────────────────────────────────────────

async def _call_model(
    config: PipelineConfig,
    model: str,
    max_tokens: int,
    image_block: dict,
    locale: str,
) -> ModelResponse:
    if not config.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set — skipping AI extraction")
        raise ExtractionServiceError("ANTHROPIC_API_KEY not set")

    client = anthropic.AsyncAnthropic(
        api_key=config.anthropic_api_key,
        timeout=config.extraction_timeout,
        max_retries=0,
    )
    try:
        message = await client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=0,
            system=SYSTEM_PROMPT.format(locale=locale),
            messages=[{
                "role": "user",
                "content": [image_block, {"type": "text", "text": USER_PROMPT}],
            }],
        )
    except Exception as e:
        logger.error("Claude API error (%s): %s", model, e)
        raise ExtractionServiceError(str(e)) from e

    text = "".join(
        block.text for block in message.content if getattr(block, "type", None) == "text"
    )
    usage = getattr(message, "usage", None)
    return ModelResponse(
        text=text,
        stop_reason=message.stop_reason,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
    )


async def run_model_ladder(
    config: PipelineConfig,
    image_block: dict,
    locale: str,
) -> tuple[Optional[dict], Optional[str]]:
    """
    Returns (payload, None) on success or (None, last_error) when every rung
    failed.  A parse from a truncated first attempt is kept if the retry
    does no better.
    """
    base = config.max_tokens
    kept: Optional[dict] = None
    observed: Optional[int] = None
    last_error: Optional[str] = None

    # 1. primary model, base budget
    try:
        resp = await _call_model(config, config.extraction_model, base, image_block, locale)
        observed = resp.output_tokens
        kept = extract_json_object(resp.text)
        if kept is not None and resp.stop_reason != "max_tokens":
            return kept, None
        last_error = ("Response truncated at max_tokens" if resp.stop_reason == "max_tokens"
                      else "Model response was not valid JSON")
    except ExtractionServiceError as e:
        last_error = str(e)

    # 2. primary model, larger budget
    budget = adaptive_budget(base, observed, config.max_tokens_ceiling)
    logger.warning("Retrying %s with max_tokens=%d (%s)", config.extraction_model, budget, last_error)
    try:
        resp = await _call_model(config, config.extraction_model, budget, image_block, locale)
        retried = extract_json_object(resp.text)
        if retried is not None:
            return retried, None
        last_error = "Model response was not valid JSON after retry"
    except ExtractionServiceError as e:
        last_error = str(e)

    if kept is not None:
        return kept, None

    # 3. fallback model
    logger.warning("Falling back to %s (%s)", config.fallback_model, last_error)
    try:
        resp = await _call_model(config, config.fallback_model, budget, image_block, locale)
        fallback = extract_json_object(resp.text)
        if fallback is not None:
            return fallback, None
        last_error = "Fallback model response was not valid JSON"
    except ExtractionServiceError as e:
        last_error = str(e)

    logger.error("AI extraction failed on every attempt: %s", last_error)
    return None, last_error


def build_draft(payload: dict[str, Any]) -> DraftReceipt:
    """Loose model output → DraftReceipt with categories and VAT normalized."""
    draft = DraftReceipt.model_validate(payload)
    items = [
        item.model_copy(update={"category": normalize_product_category(item.category)})
        for item in draft.items
    ]
    return draft.model_copy(update={
        "items": items,
        "receipt_category": normalize_receipt_category(draft.receipt_category),
        "vat_info": clean_vat_info(draft.vat_info),
        "currency": (draft.currency or DEFAULT_CURRENCY).upper(),
        "extraction_method": EXTRACTION_METHOD,
    })


# ── Orchestrator ──────────────────────────────────────────────────────────────

class ReceiptExtractor:
    def __init__(self, config: PipelineConfig, cache=None, processor=None):
        self.config = config
        self.cache = cache
        self.processor = processor

    async def extract(
        self,
        image_bytes: bytes,
        locale: str = "en",
        *,
        file_name: Optional[str] = None,
        image_url: Optional[str] = None,
        preprocessed: bool = False,
    ) -> ExtractionResult:
        try:
            return await asyncio.wait_for(
                self._extract(image_bytes, locale, file_name, image_url, preprocessed),
                timeout=self.config.pipeline_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Extraction timed out after %.0fs", self.config.pipeline_timeout)
            return ExtractionResult(
                success=False,
                error=f"Extraction timed out after {self.config.pipeline_timeout:g}s",
            )
        except Exception as e:
            logger.exception("Receipt extraction failed")
            return ExtractionResult(success=False, error=f"{type(e).__name__}: {e}")

    async def _extract(
        self,
        image_bytes: bytes,
        locale: str,
        file_name: Optional[str],
        image_url: Optional[str],
        preprocessed: bool,
    ) -> ExtractionResult:
        processed = image_bytes
        processed_name = None
        if not preprocessed and self.config.geometry_enabled:
            normalized = await self._normalize(image_bytes, file_name)
            if normalized is not None:
                processed = normalized.data
                processed_name = normalized.processed_file_name

        key = receipt_cache_key(processed, locale)
        cached = await self._cache_get(key)
        if cached is not None:
            logger.info("Cache hit for %s", key)
            return ExtractionResult(success=True, receipt=cached, cached=True)

        url = image_url if preprocessed else self._public_url(processed, processed_name)
        image_block = build_image_block(processed, url)
        logger.info("Sending %d KB image (%s) to Claude Vision",
                    len(processed) // 1024, "url" if url else "base64")

        payload, error = await run_model_ladder(self.config, image_block, locale)
        if payload is None:
            return ExtractionResult(success=False, error=error)

        receipt = reconcile(build_draft(payload))
        await self._cache_set(key, receipt)
        return ExtractionResult(success=True, receipt=receipt)

    async def _normalize(self, image_bytes: bytes, file_name: Optional[str]) -> Optional[NormalizedImage]:
        try:
            return await asyncio.wait_for(
                normalize_receipt_image(
                    image_bytes, NormalizeOptions(file_name=file_name), self.processor,
                ),
                timeout=self.config.geometry_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Geometry normalization timed out, using original image")
        except Exception as e:
            logger.warning("Geometry normalization failed (%s), using original image", e)
        return None

    def _public_url(self, processed: bytes, processed_name: Optional[str]) -> Optional[str]:
        """Public URL for the processed image, or None to send it inline."""
        base_url = self.config.public_base_url
        if not base_url:
            return None
        if not processed_name:
            ext = ".jpg" if detect_media_type(processed) == "image/jpeg" else ".png"
            processed_name = f"{int(time.time() * 1000)}-ai_processed{ext}"
            try:
                upload_dir = Path(self.config.upload_dir)
                upload_dir.mkdir(parents=True, exist_ok=True)
                (upload_dir / processed_name).write_bytes(processed)
            except OSError as e:
                logger.warning("Could not write processed image (%s), sending inline", e)
                return None
        return f"{base_url}/uploads/{processed_name}"

    async def _cache_get(self, key: str) -> Optional[ReconciledReceipt]:
        if self.cache is None:
            return None
        try:
            value = await self.cache.get(key)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None
        if value is None:
            return None
        try:
            return ReconciledReceipt.model_validate(value)
        except ValueError as e:
            logger.warning("Dropping malformed cache entry %s: %s", key, e)
            try:
                await self.cache.delete(key)
            except Exception as e:
                logger.warning("Cache delete failed for %s: %s", key, e)
            return None

    async def _cache_set(self, key: str, receipt: ReconciledReceipt):
        if self.cache is None:
            return
        try:
            await self.cache.set(
                key,
                receipt.model_dump(mode="json", by_alias=True),
                self.config.cache_ttl_seconds,
            )
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)
