"""
Data models shared by the dispatcher, the providers and the history store.

Requests and settings are frozen; conversations and results are plain
dataclasses that round-trip through to_dict()/from_dict() for storage.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union
from uuid import uuid4

from switchboard.cancellation import CancellationToken

Role = Literal["user", "assistant"]

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*);base64,(?P<data>.*)$", re.DOTALL)


def now_ms() -> int:
    return int(time.time() * 1000)


def split_data_url(value: str, fallback_mime: str = "application/octet-stream") -> tuple[str, str]:
    """Return (base64 payload, mime type) for a data URL or a bare base64 string."""
    match = _DATA_URL_RE.match(value or "")
    if match:
        return match.group("data"), match.group("mime") or fallback_mime
    return value or "", fallback_mime


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class Attachment:
    """A file the user attached: base64 (or data URL), mime type, display name."""
    data: str
    mime_type: str = "application/octet-stream"
    name: str = ""

    @property
    def base64(self) -> str:
        return split_data_url(self.data, self.mime_type)[0]

    @property
    def data_url(self) -> str:
        if self.data.startswith("data:"):
            return self.data
        return f"data:{self.mime_type};base64,{self.data}"

    @property
    def effective_mime(self) -> str:
        return split_data_url(self.data, self.mime_type)[1].lower()

    @property
    def is_image(self) -> bool:
        return self.effective_mime.startswith("image/")

    @property
    def is_pdf(self) -> bool:
        return self.effective_mime == "application/pdf" or self.name.lower().endswith(".pdf")


@dataclass
class Message:
    """A single turn in a conversation."""
    role: Role
    text: str = ""
    attachments: list[str] | None = None        # base64 / data URLs
    thoughts: str | None = None
    generated_images: list[dict] | None = None
    is_tool_output: bool = False
    thought_signature: str | None = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"role": self.role, "text": self.text}
        if self.attachments:
            out["attachments"] = list(self.attachments)
        if self.thoughts:
            out["thoughts"] = self.thoughts
        if self.generated_images:
            out["generatedImages"] = list(self.generated_images)
        if self.is_tool_output:
            out["isToolOutput"] = True
        if self.thought_signature:
            out["thoughtSignature"] = self.thought_signature
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        role = data.get("role", "user")
        # Older stores used "ai" for the assistant role
        if role == "ai":
            role = "assistant"
        return cls(
            role=role,
            text=data.get("text", "") or "",
            attachments=data.get("attachments") or data.get("image") or None,
            thoughts=data.get("thoughts") or None,
            generated_images=data.get("generatedImages") or None,
            is_tool_output=bool(data.get("isToolOutput", False)),
            thought_signature=data.get("thoughtSignature") or None,
        )


@dataclass
class Conversation:
    """A conversation: ordered messages plus last-activity timestamp (epoch ms)."""
    id: str = field(default_factory=lambda: uuid4().hex)
    title: str = ""
    messages: list[Message] = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)
    continuation_context: dict | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "timestamp": self.timestamp,
            "messages": [m.to_dict() for m in self.messages],
            "context": self.continuation_context,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        ts = data.get("timestamp")
        return cls(
            id=data.get("id") or uuid4().hex,
            title=data.get("title", "") or "",
            messages=[Message.from_dict(m) for m in data.get("messages", []) or []],
            timestamp=ts if isinstance(ts, int) else 0,
            continuation_context=data.get("context"),
        )


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatRequest:
    """One dispatch. Frozen: providers never modify it."""
    text: str
    model: str = ""
    system_instruction: str | None = None
    history: tuple[Message, ...] = ()
    files: tuple[Attachment, ...] = ()
    session_id: str = ""
    cancellation: CancellationToken = field(default_factory=CancellationToken, compare=False)
    continuation_context: dict | None = None


@dataclass
class ChatResult:
    """Normalized final result of a dispatch."""
    text: str = ""
    thoughts: str | None = None
    images: list[dict] = field(default_factory=list)
    continuation_context: dict | None = None
    status: Literal["success", "error"] = "success"
    error_text: str | None = None
    thought_signature: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def failure(cls, error_text: str) -> "ChatResult":
        return cls(status="error", error_text=error_text)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "thoughts": self.thoughts,
            "images": self.images,
            "status": self.status,
            "context": self.continuation_context,
            "errorText": self.error_text,
        }


# ---------------------------------------------------------------------------
# Provider settings: a closed union, one variant per dispatch
# ---------------------------------------------------------------------------

DEFAULT_OFFICIAL_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_WEB_BASE_URL = "https://gemini.google.com"


@dataclass(frozen=True)
class OfficialSettings:
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    thinking_level: str = "low"
    timeout: float = 120.0


@dataclass(frozen=True)
class WebClientSettings:
    account_indices: tuple[int, ...] = (0,)
    models: tuple[str, ...] = ()
    active_model_id: str | None = None
    cookies: dict = field(default_factory=dict, hash=False)
    base_url: str = DEFAULT_WEB_BASE_URL
    timeout: float = 120.0


@dataclass(frozen=True)
class EndpointConfig:
    """One named OpenAI/Claude endpoint in multi-config mode."""
    id: str
    base_url: str = ""
    api_key: str = ""
    provider_type: Literal["openai", "claude"] = "openai"
    models: tuple[str, ...] = ()
    active_model_id: str | None = None
    max_tokens: int = 8192
    thinking_enabled: bool = False
    thinking_budget: int = 10000


@dataclass(frozen=True)
class OpenAICompatibleSettings:
    base_url: str = ""
    api_key: str = ""
    model: str = ""                 # legacy: may be a comma-separated list
    provider_type: Literal["openai", "claude"] = "openai"
    max_tokens: int = 8192
    thinking_enabled: bool = False
    thinking_budget: int = 10000
    configs: tuple[EndpointConfig, ...] = ()
    active_config_id: str | None = None
    timeout: float = 120.0


@dataclass(frozen=True)
class GrokSettings:
    model: str = "grok-4"
    cookies: dict = field(default_factory=dict, hash=False)
    timeout: float = 120.0


ProviderSettings = Union[
    OfficialSettings,
    WebClientSettings,
    OpenAICompatibleSettings,
    GrokSettings,
]


@dataclass(frozen=True)
class DocumentProcessingSettings:
    """OCR side-channel applied before the model call."""
    enabled: bool = False
    base_url: str = "https://api.mistral.ai/v1/ocr"
    api_key: str = ""
    model: str = "mistral-ocr-latest"
    timeout: float = 120.0
