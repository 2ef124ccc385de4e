"""
Tests for the extraction orchestrator.

Covers:
  - JSON recovery from fenced / chatty / truncated model output
  - inline images capped to the vision size limit
  - adaptive retry budgets
  - the retry ladder: primary → bigger budget → fallback model
  - build_draft normalization (categories, VAT rows, currency)
  - ReceiptExtractor: cache hit / miss / malformed entry, geometry skip,
    public URL writes, timeouts and missing API key
"""
import asyncio
import base64
import io
import json
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest
from PIL import Image

from conftest import to_bytes
from services.cache_service import CacheError, receipt_cache_key
from services.extraction_service import (
    ExtractionServiceError,
    ModelResponse,
    ReceiptExtractor,
    adaptive_budget,
    build_draft,
    build_image_block,
    detect_media_type,
    extract_json_object,
    run_model_ladder,
)
from services.image_service import normalize_in_process

PAYLOAD = {
    "merchantName": "Albert Heijn",
    "receiptCategory": "Supermarkt",
    "currency": "eur",
    "country": "NL",
    "totals": {"subtotal": 4.50, "tax": 0, "total": 4.50},
    "vatInfo": {"9": {"amount": 0.37, "base": 4.13}, "0": {"amount": 0, "base": 0}},
    "products": [
        {"name": "Milk", "category": "drinks", "quantity": 2, "unitPrice": 1.25, "totalPrice": 2.50},
        {"name": "Bread", "category": "food", "quantity": 1, "unitPrice": 2.00, "totalPrice": 2.00},
    ],
}

IMAGE_BLOCK = {"type": "image", "source": {"type": "url", "url": "https://x/img.png"}}


def ok(payload=PAYLOAD, tokens=900):
    return ModelResponse(text=json.dumps(payload), stop_reason="end_turn", output_tokens=tokens)


def truncated(tokens=1800):
    return ModelResponse(text='{"merchantName": "Albert', stop_reason="max_tokens", output_tokens=tokens)


def png_bytes():
    return to_bytes(Image.new("RGB", (60, 100), (200, 200, 200)))


# ── Response parsing ─────────────────────────────────────────────────────────

class TestExtractJsonObject:

    def test_plain_json(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_prose_around_object(self):
        text = 'Here is the receipt:\n{"merchantName": "Shop", "totals": {"total": 3}}\nThanks!'
        assert extract_json_object(text) == {"merchantName": "Shop", "totals": {"total": 3}}

    def test_braces_inside_strings(self):
        text = 'note {"originalText": "2 x {promo}", "n": 1}'
        assert extract_json_object(text) == {"originalText": "2 x {promo}", "n": 1}

    def test_skips_invalid_span_and_finds_next(self):
        assert extract_json_object('{not json} then {"ok": true}') == {"ok": True}

    @pytest.mark.parametrize("text", ["", "no json here", '{"a": 1', "[1, 2, 3]"])
    def test_unrecoverable(self, text):
        assert extract_json_object(text) is None


class TestAdaptiveBudget:

    def test_grows_from_observed_usage(self):
        assert adaptive_budget(1800, 1800, 3200) == 2880

    def test_minimum_step(self):
        # 1.6 × 500 = 800 is below base + 400
        assert adaptive_budget(1800, 500, 3200) == 2200

    def test_default_step_when_nothing_observed(self):
        assert adaptive_budget(1800, None, 3200) == 2400
        assert adaptive_budget(1800, 0, 3200) == 2400

    def test_capped_at_ceiling(self):
        assert adaptive_budget(1800, 3000, 3200) == 3200


class TestImageBlock:

    def test_url_source(self):
        assert build_image_block(b"whatever", "https://x/a.png")["source"] == {
            "type": "url", "url": "https://x/a.png",
        }

    def test_base64_source_is_capped_jpeg(self):
        block = build_image_block(png_bytes())
        assert block["source"]["type"] == "base64"
        assert block["source"]["media_type"] == "image/jpeg"

    def test_phone_photo_fits_inline_limit(self, receipt_photo):
        # 12 MP noisy photo, normalized to lossless PNG first
        rng = np.random.default_rng(1)
        big = np.asarray(receipt_photo.resize((3000, 4000))).astype(np.int16)
        big = np.clip(big + rng.normal(0, 25, big.shape), 0, 255).astype(np.uint8)
        normalized = normalize_in_process(to_bytes(Image.fromarray(big), "JPEG"))

        block = build_image_block(normalized.data)
        assert len(block["source"]["data"]) <= 5 * 1024 * 1024
        decoded = base64.standard_b64decode(block["source"]["data"])
        with Image.open(io.BytesIO(decoded)) as sent:
            assert max(sent.size) <= 1568

    def test_undecodable_bytes_sent_as_is(self):
        block = build_image_block(b"\xff\xd8\xff\xe0 truncated jpeg")
        assert block["source"]["media_type"] == "image/jpeg"
        assert base64.standard_b64decode(block["source"]["data"]) == b"\xff\xd8\xff\xe0 truncated jpeg"

    @pytest.mark.parametrize("head, expected", [
        (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8", "image/webp"),
        (b"GIF89a", "image/gif"),
        (b"????", "image/png"),
    ])
    def test_magic_bytes(self, head, expected):
        assert detect_media_type(head) == expected


# ── Retry ladder ─────────────────────────────────────────────────────────────

class TestModelLadder:

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, config):
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]) as mock_call:
            payload, error = await run_model_ladder(config, IMAGE_BLOCK, "en")

        assert payload == PAYLOAD
        assert error is None
        assert mock_call.await_count == 1
        assert mock_call.await_args.args[1:3] == (config.extraction_model, config.max_tokens)

    @pytest.mark.asyncio
    async def test_unparseable_then_retry_with_larger_budget(self, config):
        bad = ModelResponse(text="I cannot read this", stop_reason="end_turn", output_tokens=1000)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[bad, ok()]) as mock_call:
            payload, error = await run_model_ladder(config, IMAGE_BLOCK, "en")

        assert payload == PAYLOAD
        retry_args = mock_call.await_args_list[1].args
        assert retry_args[1] == config.extraction_model
        assert retry_args[2] == 2200

    @pytest.mark.asyncio
    async def test_truncated_first_attempt_is_retried(self, config):
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[truncated(1800), ok()]) as mock_call:
            payload, _ = await run_model_ladder(config, IMAGE_BLOCK, "en")

        assert payload == PAYLOAD
        assert mock_call.await_args_list[1].args[2] == 2880

    @pytest.mark.asyncio
    async def test_truncated_but_parseable_kept_when_retry_fails(self, config):
        first = ModelResponse(text=json.dumps({"merchantName": "Kept"}),
                              stop_reason="max_tokens", output_tokens=1800)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock,
                   side_effect=[first, ExtractionServiceError("overloaded")]) as mock_call:
            payload, error = await run_model_ladder(config, IMAGE_BLOCK, "en")

        assert payload == {"merchantName": "Kept"}
        assert error is None
        assert mock_call.await_count == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_secondary_model(self, config):
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock,
                   side_effect=[ExtractionServiceError("500"), ExtractionServiceError("500"), ok()]
                   ) as mock_call:
            payload, error = await run_model_ladder(config, IMAGE_BLOCK, "en")

        assert payload == PAYLOAD
        assert mock_call.await_args_list[2].args[1] == config.fallback_model

    @pytest.mark.asyncio
    async def test_every_rung_fails(self, config):
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock,
                   side_effect=[ExtractionServiceError("a"), ExtractionServiceError("b"),
                                ExtractionServiceError("fallback down")]):
            payload, error = await run_model_ladder(config, IMAGE_BLOCK, "en")

        assert payload is None
        assert error == "fallback down"

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_any_request(self, config):
        from services.extraction_service import _call_model
        no_key = config.model_copy(update={"anthropic_api_key": None})
        with pytest.raises(ExtractionServiceError, match="ANTHROPIC_API_KEY"):
            await _call_model(no_key, "m", 100, IMAGE_BLOCK, "en")


# ── Draft building ───────────────────────────────────────────────────────────

class TestBuildDraft:

    def test_normalizes_categories_vat_and_currency(self):
        draft = build_draft(PAYLOAD)
        assert draft.receipt_category == "grocery"
        assert [i.category for i in draft.items] == ["beverages", "food"]
        assert set(draft.vat_info) == {"9"}
        assert draft.currency == "EUR"
        assert draft.extraction_method == "ai-unified-image"

    def test_missing_currency_defaults_to_usd(self):
        assert build_draft({"merchantName": "X"}).currency == "USD"

    def test_string_numbers_and_items_alias(self):
        draft = build_draft({"items": [{"name": "A", "totalPrice": "3,50"}],
                             "totals": {"total": "$3.50"}})
        assert draft.items[0].total_price == 3.50
        assert draft.totals.total == 3.50


# ── Orchestrator ─────────────────────────────────────────────────────────────

@pytest.fixture
def fast_config(config):
    return config.model_copy(update={"geometry_enabled": False})


class TestReceiptExtractor:

    @pytest.mark.asyncio
    async def test_success_reconciles_and_caches(self, fast_config, cache):
        extractor = ReceiptExtractor(fast_config, cache=cache)
        data = png_bytes()
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]):
            result = await extractor.extract(data, "nl")

        assert result.success is True
        assert result.cached is False
        assert result.receipt.merchant_name == "Albert Heijn"
        assert result.receipt.totals.total == 4.50
        assert result.receipt.validation.anomalies_detected == 0
        assert result.receipt.validation.confidence == 1.0

        stored = await cache.get(receipt_cache_key(data, "nl"))
        assert stored["merchantName"] == "Albert Heijn"

    @pytest.mark.asyncio
    async def test_second_call_is_cache_hit(self, fast_config, cache):
        extractor = ReceiptExtractor(fast_config, cache=cache)
        data = png_bytes()
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]) as mock_call:
            first = await extractor.extract(data, "nl")
            second = await extractor.extract(data, "nl")

        assert mock_call.await_count == 1
        assert second.cached is True
        assert second.receipt == first.receipt

    @pytest.mark.asyncio
    async def test_locale_is_part_of_cache_key(self, fast_config, cache):
        extractor = ReceiptExtractor(fast_config, cache=cache)
        data = png_bytes()
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok(), ok()]) as mock_call:
            await extractor.extract(data, "nl")
            result = await extractor.extract(data, "es")

        assert mock_call.await_count == 2
        assert result.cached is False

    @pytest.mark.asyncio
    async def test_malformed_cache_entry_is_a_miss(self, fast_config, cache):
        data = png_bytes()
        await cache.set(receipt_cache_key(data, "en"), {"totals": "garbage"}, 60)
        extractor = ReceiptExtractor(fast_config, cache=cache)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]) as mock_call:
            result = await extractor.extract(data, "en")

        assert result.success is True
        assert result.cached is False
        assert mock_call.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_cache_entry_is_deleted(self, fast_config):
        data = png_bytes()
        key = receipt_cache_key(data, "en")
        store = AsyncMock()
        store.get.return_value = {"totals": "garbage"}
        extractor = ReceiptExtractor(fast_config, cache=store)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]):
            result = await extractor.extract(data, "en")

        assert result.success is True
        store.delete.assert_awaited_once_with(key)

    @pytest.mark.asyncio
    async def test_broken_cache_does_not_fail_extraction(self, fast_config):
        broken = AsyncMock()
        broken.get.side_effect = CacheError("disk gone")
        broken.set.side_effect = CacheError("disk gone")
        extractor = ReceiptExtractor(fast_config, cache=broken)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]):
            result = await extractor.extract(png_bytes(), "en")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_ladder_failure_is_reported(self, fast_config):
        extractor = ReceiptExtractor(fast_config)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=ExtractionServiceError("auth failed")):
            result = await extractor.extract(png_bytes(), "en")

        assert result.success is False
        assert result.receipt is None
        assert "auth failed" in result.error

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_cleanly(self, fast_config):
        extractor = ReceiptExtractor(fast_config.model_copy(update={"anthropic_api_key": None}))
        result = await extractor.extract(png_bytes(), "en")
        assert result.success is False
        assert "ANTHROPIC_API_KEY" in result.error

    @pytest.mark.asyncio
    async def test_pipeline_timeout(self, fast_config):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        extractor = ReceiptExtractor(fast_config.model_copy(update={"pipeline_timeout": 0.05}))
        with patch("services.extraction_service._call_model", side_effect=slow):
            result = await extractor.extract(png_bytes(), "en")

        assert result.success is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_preprocessed_skips_geometry_and_uses_given_url(self, config):
        extractor = ReceiptExtractor(config)
        with patch("services.extraction_service.normalize_receipt_image",
                   new_callable=AsyncMock) as mock_norm, \
             patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]) as mock_call:
            result = await extractor.extract(png_bytes(), "en", preprocessed=True,
                                             image_url="https://cdn.example.com/r.png")

        assert result.success is True
        mock_norm.assert_not_awaited()
        assert mock_call.await_args.args[3]["source"] == {
            "type": "url", "url": "https://cdn.example.com/r.png",
        }

    @pytest.mark.asyncio
    async def test_geometry_failure_uses_original_bytes(self, config, cache):
        extractor = ReceiptExtractor(config, cache=cache)
        data = png_bytes()
        with patch("services.extraction_service.normalize_receipt_image",
                   new_callable=AsyncMock, side_effect=RuntimeError("boom")), \
             patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]):
            result = await extractor.extract(data, "en")

        assert result.success is True
        assert await cache.get(receipt_cache_key(data, "en")) is not None

    @pytest.mark.asyncio
    async def test_normalized_image_is_sent(self, config, receipt_photo_bytes):
        extractor = ReceiptExtractor(config)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]) as mock_call:
            result = await extractor.extract(receipt_photo_bytes, "en")

        assert result.success is True
        source = mock_call.await_args.args[3]["source"]
        assert source["type"] == "base64"
        assert source["media_type"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_public_url_writes_processed_file(self, fast_config, tmp_path):
        cfg = fast_config.model_copy(update={"public_base_url": "https://api.example.com"})
        extractor = ReceiptExtractor(cfg)
        with patch("services.extraction_service._call_model",
                   new_callable=AsyncMock, side_effect=[ok()]) as mock_call:
            await extractor.extract(png_bytes(), "en")

        url = mock_call.await_args.args[3]["source"]["url"]
        assert url.startswith("https://api.example.com/uploads/")
        assert url.endswith("-ai_processed.png")
        written = list((tmp_path / "uploads").glob("*-ai_processed.png"))
        assert len(written) == 1
