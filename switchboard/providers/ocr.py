"""
Mistral-style OCR client for the document-processing side channel.

Images go up as `image_url`, everything else as `document_url`, both as data
URLs. The response shape varies between OCR services, so text is looked for
in several places (see extract_ocr_text).
"""

from __future__ import annotations

import logging

from switchboard.cancellation import CancellationToken
from switchboard.errors import ConfigurationError, OCRError
from switchboard.models import Attachment, DocumentProcessingSettings
from switchboard.providers.base import BaseProvider

logger = logging.getLogger(__name__)


def ocr_endpoint(base_url: str) -> str:
    """A bare `/v1` base gets `/ocr` appended; anything else is used as-is."""
    url = base_url.strip().rstrip("/")
    if url.endswith("/v1"):
        url += "/ocr"
    return url


def build_document(attachment: Attachment) -> dict:
    if attachment.is_image:
        return {"type": "image_url", "image_url": attachment.data_url}
    return {"type": "document_url", "document_url": attachment.data_url}


def _join_chunks(items: list, *keys: str) -> str:
    chunks = []
    for item in items:
        if not isinstance(item, dict):
            continue
        for key in keys:
            if item.get(key):
                chunks.append(item[key])
                break
    return "\n\n".join(chunks).strip()


def extract_ocr_text(payload) -> str:
    """text -> pages[] -> results[] -> choices[].message.content -> output."""
    if not isinstance(payload, dict):
        return ""
    if isinstance(payload.get("text"), str):
        return payload["text"].strip()
    if isinstance(payload.get("pages"), list):
        text = _join_chunks(payload["pages"], "markdown", "text", "content")
        if text:
            return text
    if isinstance(payload.get("results"), list):
        text = _join_chunks(payload["results"], "text", "markdown", "content")
        if text:
            return text
    if isinstance(payload.get("choices"), list):
        contents = [
            (c.get("message") or {}).get("content")
            for c in payload["choices"]
            if isinstance(c, dict)
        ]
        text = "\n\n".join(c for c in contents if isinstance(c, str) and c).strip()
        if text:
            return text
    if isinstance(payload.get("output"), str):
        return payload["output"].strip()
    return ""


class MistralOCRClient(BaseProvider):
    """POSTs one document at a time to an OCR endpoint."""

    name = "ocr"

    async def extract_text(
        self,
        attachment: Attachment,
        settings: DocumentProcessingSettings,
        cancellation: CancellationToken | None = None,
    ) -> str:
        if not attachment.data:
            raise OCRError("OCR file content is missing.")
        if not settings.base_url:
            raise ConfigurationError("OCR Base URL is missing.", code="MISSING_OCR_BASE_URL")
        if not settings.model:
            raise ConfigurationError("OCR model name is missing.", code="MISSING_OCR_MODEL")

        url = ocr_endpoint(settings.base_url)
        payload = {"model": settings.model, "document": build_document(attachment)}
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"

        if cancellation is not None:
            cancellation.raise_if_cancelled()
        logger.debug("OCR: %s (%s) -> %s", attachment.name or "<unnamed>", attachment.effective_mime, url)
        with self.transport_errors(settings.timeout):
            async with self.client(settings.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
                await self.check_response(resp, label="OCR API Error")
                data = self.read_json(resp, label="OCR API Error")

        text = extract_ocr_text(data)
        if not text:
            raise OCRError("OCR response was empty.")
        return text
