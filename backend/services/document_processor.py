"""
Client for the document-geometry microservice.

The service shares the upload directory with this backend.  It is given a
file name, writes a processed copy next to it, and answers with the path:

  POST /process-receipt  {"fileName": "..."}
    → {"success": true, "processed": true, "processedPath": "...",
       "format": "png", "metadata": {...}}
  GET  /health

Whether the service is used at all is an attribute of the client instance.
"""
import io
import logging
from pathlib import Path
from typing import Optional

import httpx
from PIL import Image

from services.image_service import NormalizedImage

logger = logging.getLogger("receiptlens.docproc")

HEALTH_TIMEOUT = 5.0


class DocumentProcessorError(Exception):
    """Raised when the microservice call fails or returns an unusable result."""
    pass


class DocumentProcessorClient:
    def __init__(
        self,
        base_url: str,
        upload_dir: str,
        timeout: float = 30.0,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.upload_dir = Path(upload_dir)
        self.timeout = timeout
        self.enabled = enabled
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def health_check(self) -> bool:
        try:
            async with self._client(HEALTH_TIMEOUT) as client:
                resp = await client.get("/health")
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Document processor health check failed: %s", e)
            return False

    async def process_receipt(self, file_name: str) -> NormalizedImage:
        if not self.enabled:
            raise DocumentProcessorError("Document processor disabled")
        try:
            async with self._client(self.timeout) as client:
                resp = await client.post("/process-receipt", json={"fileName": file_name})
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as e:
            raise DocumentProcessorError(f"Document processor request failed: {e}") from e
        except ValueError as e:
            raise DocumentProcessorError("Document processor returned invalid JSON") from e

        if not isinstance(body, dict):
            raise DocumentProcessorError("Document processor returned an unexpected body")
        if not body.get("success") or not body.get("processed") or not body.get("processedPath"):
            raise DocumentProcessorError(
                f"Document processor did not process {file_name}: {body.get('error') or body}"
            )

        # Only the file name is trusted; the service's own mount point may differ.
        processed_name = Path(str(body["processedPath"])).name
        processed_path = self.upload_dir / processed_name
        try:
            data = processed_path.read_bytes()
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
        except OSError as e:
            raise DocumentProcessorError(f"Processed file unreadable: {processed_path}") from e

        metadata = body.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        logger.info("Document processor produced %s (%dx%d)", processed_name, width, height)
        return NormalizedImage(
            data=data,
            width=width,
            height=height,
            format=str(body.get("format") or processed_path.suffix.lstrip(".") or "png"),
            strategy=str(metadata.get("strategy") or "document-processor"),
            processed_file_name=processed_name,
        )
