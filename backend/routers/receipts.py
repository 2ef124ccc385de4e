"""
Receipts Router

POST /api/receipts/extract    — upload image → normalized, extracted, reconciled receipt
POST /api/receipts/normalize  — upload image → cropped/oriented image bytes
GET  /api/receipts/diagnose   — dependency and collaborator checks
"""
import asyncio
import logging
import os
import uuid
from functools import lru_cache

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from db.database import DB_PATH
from models.schemas import ExtractionResult
from services.cache_service import SQLiteCache
from services.config import PipelineConfig
from services.document_processor import DocumentProcessorClient
from services.extraction_service import ReceiptExtractor
from services.image_service import GeometryError, NormalizeOptions, normalize_in_process

logger = logging.getLogger("receiptlens.receipts")
router = APIRouter()


@lru_cache
def get_config() -> PipelineConfig:
    return PipelineConfig.from_env()


@lru_cache
def get_cache() -> SQLiteCache:
    """Process-wide cache shared by every request."""
    return SQLiteCache(DB_PATH)


def get_processor(config: PipelineConfig = Depends(get_config)) -> DocumentProcessorClient:
    return DocumentProcessorClient(
        base_url=config.document_processor_url,
        upload_dir=config.upload_dir,
        timeout=config.document_processor_timeout,
        enabled=config.document_processor_enabled,
    )


def get_extractor(
    config: PipelineConfig = Depends(get_config),
    processor: DocumentProcessorClient = Depends(get_processor),
    cache: SQLiteCache = Depends(get_cache),
) -> ReceiptExtractor:
    """Dependency: an extractor wired from environment configuration."""
    return ReceiptExtractor(config, cache=cache, processor=processor)


def _save_upload(contents: bytes, filename: str | None, upload_dir: str) -> str | None:
    """Store the upload in the shared directory so the document processor can read it."""
    ext = os.path.splitext(filename or "")[1].lower() or ".jpg"
    name = f"{uuid.uuid4()}{ext}"
    try:
        os.makedirs(upload_dir, exist_ok=True)
        with open(os.path.join(upload_dir, name), "wb") as f:
            f.write(contents)
    except OSError as e:
        logger.warning("Could not save upload to %s: %s", upload_dir, e)
        return None
    return name


# ── Extraction ────────────────────────────────────────────────────────────────

@router.post("/extract", response_model=ExtractionResult)
async def extract_receipt(
    file: UploadFile = File(...),
    locale: str = Form("en"),
    preprocessed: bool = Form(False),
    image_url: str | None = Form(None),
    extractor: ReceiptExtractor = Depends(get_extractor),
):
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=422, detail="Empty upload")

    file_name = None
    if extractor.processor is not None and extractor.processor.enabled and not preprocessed:
        file_name = _save_upload(contents, file.filename, extractor.config.upload_dir)

    result = await extractor.extract(
        contents,
        locale,
        file_name=file_name,
        image_url=image_url,
        preprocessed=preprocessed,
    )
    if not result.success:
        raise HTTPException(status_code=422, detail=f"Extraction failed: {result.error}")
    return result


@router.post("/normalize")
async def normalize_receipt(
    file: UploadFile = File(...),
    output_format: str = Form("png"),
):
    """Run only the geometry stage; handy for checking what the model will see."""
    contents = await file.read()
    try:
        normalized = await asyncio.to_thread(
            normalize_in_process, contents, NormalizeOptions(output_format=output_format),
        )
    except GeometryError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return Response(
        content=normalized.data,
        media_type=f"image/{normalized.format}",
        headers={
            "X-Crop-Strategy": normalized.strategy,
            "X-Image-Width": str(normalized.width),
            "X-Image-Height": str(normalized.height),
        },
    )


# ── Diagnostics ───────────────────────────────────────────────────────────────

@router.get("/diagnose")
async def diagnose(
    config: PipelineConfig = Depends(get_config),
    processor: DocumentProcessorClient = Depends(get_processor),
):
    """Check that image libraries, the Anthropic key and collaborators are usable."""
    results = {}

    # Pillow
    try:
        from PIL import Image
        results["pillow"] = {"ok": True}
    except ImportError as e:
        results["pillow"] = {"ok": False, "error": str(e)}

    # numpy
    try:
        import numpy
        results["numpy"] = {"ok": True, "version": numpy.__version__}
    except ImportError as e:
        results["numpy"] = {"ok": False, "error": str(e)}

    # HEIC/HEIF support
    try:
        from pillow_heif import register_heif_opener
        results["heic_support"] = {"ok": True}
    except ImportError:
        results["heic_support"] = {"ok": False, "error": "pillow-heif not installed — HEIC files unsupported"}

    # Anthropic key: report presence only, never key material
    key = config.anthropic_api_key
    results["anthropic_key"] = {
        "ok": bool(key and key.startswith("sk-")),
        "set": bool(key),
    }

    # Document processor (optional: disabled counts as ok)
    if processor.enabled:
        healthy = await processor.health_check()
        results["document_processor"] = {"ok": healthy, "enabled": True, "url": processor.base_url}
    else:
        results["document_processor"] = {"ok": True, "enabled": False}

    # Cache database + upload dir
    cache_dir = os.path.dirname(DB_PATH) or "."
    results["cache_db"] = {
        "ok": os.path.isdir(cache_dir) and os.access(cache_dir, os.W_OK),
        "path": DB_PATH,
    }
    results["upload_dir"] = {
        "ok": os.path.isdir(config.upload_dir) and os.access(config.upload_dir, os.W_OK),
        "path": config.upload_dir,
    }

    return {"all_ok": all(v.get("ok") for v in results.values()), "checks": results}
