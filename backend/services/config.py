"""
Pipeline configuration.

Read from the environment with os.environ.get and collected into a
PipelineConfig that is handed to the extractor.  Unset or unparseable
numeric values fall back to the defaults below.
"""
import os

from pydantic import BaseModel


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


class PipelineConfig(BaseModel):
    anthropic_api_key: str = ""
    extraction_model: str = "claude-sonnet-4-5"
    fallback_model: str = "claude-haiku-4-5"
    max_tokens: int = 1800
    max_tokens_ceiling: int = 3200
    extraction_timeout: float = 120.0

    geometry_enabled: bool = True
    geometry_timeout: float = 30.0

    document_processor_enabled: bool = False
    document_processor_url: str = "http://document-processor:5000"
    document_processor_timeout: float = 30.0

    upload_dir: str = "/data/uploads"
    public_base_url: str = ""

    cache_ttl_seconds: int = 7 * 24 * 3600
    pipeline_timeout: float = 180.0

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
            extraction_model=os.environ.get("EXTRACTION_MODEL", "claude-sonnet-4-5"),
            fallback_model=os.environ.get("EXTRACTION_FALLBACK_MODEL", "claude-haiku-4-5"),
            max_tokens=int(_env_float("EXTRACTION_MAX_TOKENS", 1800)),
            extraction_timeout=_env_float("EXTRACTION_TIMEOUT", 120.0),
            geometry_enabled=_env_bool("GEOMETRY_ENABLED", True),
            geometry_timeout=_env_float("GEOMETRY_TIMEOUT", 30.0),
            document_processor_enabled=_env_bool("DOCUMENT_PROCESSOR_ENABLED", False),
            document_processor_url=os.environ.get(
                "DOCUMENT_PROCESSOR_URL", "http://document-processor:5000"
            ),
            document_processor_timeout=_env_float("DOCUMENT_PROCESSOR_TIMEOUT", 30.0),
            upload_dir=os.environ.get("UPLOAD_DIR", "/data/uploads"),
            public_base_url=os.environ.get("PUBLIC_BASE_URL", "").rstrip("/"),
            cache_ttl_seconds=int(_env_float("CACHE_TTL_SECONDS", 7 * 24 * 3600)),
            pipeline_timeout=_env_float("PIPELINE_TIMEOUT", 180.0),
        )
