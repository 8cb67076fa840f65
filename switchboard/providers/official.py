"""
Official Gemini API provider (stateless generateContent).

No streaming: one JSON response, handed to the sink as a single completed
update. History is replayed in full on every call; continuation context is
always None.
"""

from __future__ import annotations

import logging

from switchboard.cancellation import UpdateSink
from switchboard.errors import ConfigurationError, TransportError
from switchboard.models import (
    DEFAULT_OFFICIAL_BASE_URL,
    ChatRequest,
    ChatResult,
    OfficialSettings,
    split_data_url,
)
from switchboard.providers.base import BaseProvider
from switchboard.streaming import StreamResult, complete_once

logger = logging.getLogger(__name__)

DEFAULT_OFFICIAL_MODEL = "gemini-2.5-flash"


def _inline(data: str, fallback_mime: str = "image/png") -> dict:
    payload, mime = split_data_url(data, fallback_mime)
    return {"inlineData": {"mimeType": mime, "data": payload}}


def build_payload(request: ChatRequest, settings: OfficialSettings) -> dict:
    """Translate a ChatRequest into a generateContent body."""
    contents: list[dict] = []
    for msg in request.history:
        parts: list[dict] = []
        if msg.text:
            parts.append({"text": msg.text})
        if msg.role == "user":
            parts.extend(_inline(img) for img in msg.attachments or [])
        if msg.role == "assistant" and msg.thought_signature and parts:
            parts[0]["thoughtSignature"] = msg.thought_signature
        if parts:
            role = "model" if msg.role == "assistant" else "user"
            contents.append({"role": role, "parts": parts})

    current: list[dict] = [_inline(f.data, f.mime_type) for f in request.files]
    if request.text:
        current.append({"text": request.text})
    contents.append({"role": "user", "parts": current or [{"text": ""}]})

    payload: dict = {"contents": contents}
    if request.system_instruction:
        payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
    if settings.thinking_level:
        payload["generationConfig"] = {
            "thinkingConfig": {
                "thinkingLevel": settings.thinking_level,
                "includeThoughts": True,
            }
        }
    return payload


def parse_response(data: dict) -> tuple[StreamResult, str | None]:
    """Split candidate parts into answer text, thoughts, inline images, signature."""
    candidates = data.get("candidates") or []
    if not candidates:
        reason = (data.get("promptFeedback") or {}).get("blockReason", "unknown")
        raise TransportError(f"No response candidates (blockReason: {reason})", status_code=200)

    text = ""
    thoughts = ""
    images: list[dict] = []
    signature = None
    for part in (candidates[0].get("content") or {}).get("parts") or []:
        if part.get("thoughtSignature"):
            signature = part["thoughtSignature"]
        if "text" in part:
            if part.get("thought") is True:
                thoughts += part["text"]
            else:
                text += part["text"]
        inline = part.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            images.append({
                "base64": inline["data"],
                "mime_type": inline.get("mimeType", "image/png"),
            })
    return StreamResult(text=text, thoughts=thoughts or None, images=images), signature


class OfficialProvider(BaseProvider):
    """Gemini generateContent over an API key."""

    name = "official"

    @staticmethod
    def resolve_model(request: ChatRequest, settings: OfficialSettings) -> str:
        return request.model or settings.model or DEFAULT_OFFICIAL_MODEL

    async def send(
        self,
        request: ChatRequest,
        settings: OfficialSettings,
        on_update: UpdateSink | None = None,
    ) -> ChatResult:
        if not settings.api_key:
            raise ConfigurationError("API Key is missing. Please check settings.", code="MISSING_API_KEY")

        base = (settings.base_url or DEFAULT_OFFICIAL_BASE_URL).rstrip("/")
        model = self.resolve_model(request, settings)
        url = f"{base}/v1beta/models/{model}:generateContent"
        payload = build_payload(request, settings)

        logger.debug("Official API: requesting %s", model)
        with self.transport_errors(settings.timeout):
            async with self.client(settings.timeout) as client:
                resp = await client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": settings.api_key},
                )
                await self.check_response(resp)
                data = self.read_json(resp)

        result, signature = parse_response(data)
        complete_once(result, on_update)
        return ChatResult(
            text=result.text,
            thoughts=result.thoughts,
            images=result.images,
            continuation_context=None,
            thought_signature=signature,
        )
