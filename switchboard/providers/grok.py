"""
Grok web provider.

Talks to grok.com's app-chat REST endpoints with the user's session cookies.
History is flattened into one "System:/User:/Assistant:" transcript per call,
attachments are uploaded first (concurrently) and referenced by file id.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import random
import string
import uuid

from switchboard.cancellation import UpdateSink
from switchboard.errors import TransportError
from switchboard.models import Attachment, ChatRequest, ChatResult, GrokSettings, Message, split_data_url
from switchboard.providers.base import BaseProvider
from switchboard.streaming import GrokStreamNormalizer

logger = logging.getLogger(__name__)

GROK_BASE_URL = "https://grok.com"
CHAT_PATH = "/rest/app-chat/conversations/new"
UPLOAD_PATH = "/rest/app-chat/upload-file"
DEFAULT_GROK_MODEL = "grok-4"
DEFAULT_MODE = "MODEL_MODE_FAST"

# public name -> (backend model, mode, video generation)
MODEL_CONFIG: dict[str, tuple[str, str, bool]] = {
    "grok-3-fast": ("grok-3", "MODEL_MODE_FAST", False),
    "grok-4-fast": ("grok-4-mini-thinking-tahoe", "MODEL_MODE_GROK_4_MINI_THINKING", False),
    "grok-4": ("grok-4", "MODEL_MODE_FAST", False),
    "grok-4.1-thinking": ("grok-4-1-thinking-1129", "MODEL_MODE_AUTO", False),
    "grok-imagine-0.9": ("grok-3", "MODEL_MODE_FAST", True),
}


def resolve_model(name: str | None) -> tuple[str, str, bool]:
    """Map a public model name to (backend model, mode, is_video)."""
    if name and name in MODEL_CONFIG:
        return MODEL_CONFIG[name]
    return name or DEFAULT_GROK_MODEL, DEFAULT_MODE, False


def build_conversation_text(
    system_instruction: str | None,
    history: tuple[Message, ...] | list[Message],
    prompt: str,
) -> str:
    lines: list[str] = []
    if system_instruction:
        lines.append(f"System: {system_instruction}")
    for msg in history:
        text = (msg.text or "").strip()
        if text:
            role = "Assistant" if msg.role == "assistant" else "User"
            lines.append(f"{role}: {text}")
    if prompt:
        lines.append(f"User: {prompt}")
    return "\n".join(lines)


def build_payload(message: str, model: str, mode: str, file_ids: list[str], is_video: bool) -> dict:
    payload = {
        "temporary": True,
        "modelName": model,
        "message": message,
        "fileAttachments": file_ids,
        "imageAttachments": [],
        "disableSearch": False,
        "enableImageGeneration": True,
        "returnImageBytes": False,
        "returnRawGrokInXaiRequest": False,
        "enableImageStreaming": True,
        "imageGenerationCount": 2,
        "forceConcise": False,
        "toolOverrides": {},
        "enableSideBySide": True,
        "sendFinalMetadata": True,
        "isReasoning": False,
        "webpageUrls": [],
        "disableTextFollowUps": True,
        "responseMetadata": {"requestModelDetails": {"modelId": model}},
        "disableMemory": False,
        "forceSideBySide": False,
        "modelMode": mode,
        "isAsyncChat": False,
    }
    if is_video:
        payload["toolOverrides"] = {"videoGen": True}
    return payload


def _statsig_id() -> str:
    # The web client sends a base64'd JS error string; any plausible one passes.
    if random.random() > 0.5:
        rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
        msg = f"e:TypeError: Cannot read properties of null (reading 'children['{rand}']')"
    else:
        rand = "".join(random.choices(string.ascii_lowercase, k=10))
        msg = f"e:TypeError: Cannot read properties of undefined (reading '{rand}')"
    return base64.b64encode(msg.encode()).decode()


def build_headers(path: str = CHAT_PATH) -> dict:
    return {
        "Accept": "*/*",
        "Content-Type": "text/plain;charset=UTF-8" if "upload-file" in path else "application/json",
        "x-statsig-id": _statsig_id(),
        "x-xai-request-id": str(uuid.uuid4()),
        "Referer": GROK_BASE_URL,
    }


class GrokProvider(BaseProvider):
    """grok.com app-chat, cookie-authenticated."""

    name = "grok"

    def __init__(self, transport=None, base_url: str = GROK_BASE_URL):
        super().__init__(transport)
        self.base_url = base_url.rstrip("/")

    async def _upload(self, client, attachment: Attachment) -> str | None:
        data, mime = split_data_url(attachment.data, attachment.mime_type or "image/png")
        if not data:
            raise TransportError("Invalid file data for Grok upload.")
        extension = mime.split("/")[-1] or "png"
        body = {
            "fileName": attachment.name or f"image.{extension}",
            "fileMimeType": mime,
            "content": data,
        }
        resp = await client.post(
            f"{self.base_url}{UPLOAD_PATH}",
            json=body,
            headers=build_headers(UPLOAD_PATH),
        )
        await self.check_response(resp, label="Grok upload failed")
        result = self.read_json(resp, label="Grok upload failed")
        return result.get("fileMetadataId") or result.get("fileId") or result.get("id")

    async def send(
        self,
        request: ChatRequest,
        settings: GrokSettings,
        on_update: UpdateSink | None = None,
    ) -> ChatResult:
        model, mode, is_video = resolve_model(request.model or settings.model)
        message = build_conversation_text(request.system_instruction, request.history, request.text)
        normalizer = GrokStreamNormalizer(on_update)

        with self.transport_errors(settings.timeout):
            async with self.client(settings.timeout, cookies=settings.cookies or None) as client:
                file_ids: list[str] = []
                if request.files:
                    uploads = await asyncio.gather(*(self._upload(client, f) for f in request.files))
                    file_ids = [fid for fid in uploads if fid]
                    logger.debug("Grok: uploaded %d/%d files", len(file_ids), len(request.files))

                payload = build_payload(message, model, mode, file_ids, is_video)
                async with client.stream(
                    "POST",
                    f"{self.base_url}{CHAT_PATH}",
                    json=payload,
                    headers=build_headers(CHAT_PATH),
                ) as resp:
                    await self.check_response(resp, label="Grok request failed")
                    result = await self.pump(resp, normalizer, request.cancellation)

        return ChatResult(
            text=result.text,
            thoughts=result.thoughts,
            images=result.images,
            continuation_context=None,
        )
