"""
OpenAI-compatible and Claude provider.

Supports any endpoint that speaks /chat/completions SSE (OpenAI, DeepSeek,
vLLM, llama.cpp, LocalAI, OpenRouter, ...) and Anthropic's /v1/messages SSE,
selected by provider_type.

Endpoint/model resolution (multi-config mode):
    request model "cfg::model"   -> that config, that model
    request model "<config id>"  -> that config, its active/first model
    request model "gpt-4o"       -> active (or first) config, that model
    empty / "openai_custom"      -> active (or first) config, its active/first model
With no configs at all, the legacy single-config fields are used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from switchboard.cancellation import UpdateSink
from switchboard.errors import ConfigurationError
from switchboard.models import (
    ChatRequest,
    ChatResult,
    EndpointConfig,
    Message,
    OpenAICompatibleSettings,
    split_data_url,
)
from switchboard.providers.base import BaseProvider
from switchboard.streaming import ClaudeStreamNormalizer, OpenAIStreamNormalizer

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
CONFIG_MODEL_SEPARATOR = "::"
LEGACY_MODEL_PLACEHOLDER = "openai_custom"
CLAUDE_API_VERSION = "2023-06-01"
CLAUDE_THINKING_MIN_TOKENS = 16000


@dataclass(frozen=True)
class ResolvedEndpoint:
    """Everything needed for one call: where, who, which model, which dialect."""
    base_url: str
    api_key: str
    model: str
    provider_type: str = "openai"
    max_tokens: int = 8192
    thinking_enabled: bool = False
    thinking_budget: int = 10000
    timeout: float = 120.0
    config_id: str | None = None

    @property
    def is_claude(self) -> bool:
        return self.provider_type == "claude"


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------

def parse_model_ref(value: str | None, config_ids: set[str]) -> tuple[str | None, str | None]:
    """Split a request model string into (config id, explicit model id)."""
    value = (value or "").strip()
    if not value or value == LEGACY_MODEL_PLACEHOLDER:
        return None, None
    if CONFIG_MODEL_SEPARATOR in value:
        config_id, _, model_id = value.partition(CONFIG_MODEL_SEPARATOR)
        return config_id.strip() or None, model_id.strip() or None
    if value in config_ids or value.startswith("cfg_"):
        return value, None
    return None, value


def _bind_config(settings: OpenAICompatibleSettings, config_id: str | None) -> EndpointConfig | None:
    if not settings.configs:
        return None
    by_id = {c.id: c for c in settings.configs}
    if config_id and config_id in by_id:
        return by_id[config_id]
    if config_id:
        logger.warning("Unknown endpoint config '%s', falling back", config_id)
    if settings.active_config_id and settings.active_config_id in by_id:
        return by_id[settings.active_config_id]
    return settings.configs[0]


def resolve_endpoint(request_model: str | None, settings: OpenAICompatibleSettings) -> ResolvedEndpoint:
    """
    Model precedence: explicit request model -> bound config's active model ->
    bound config's first model -> DEFAULT_OPENAI_MODEL.
    """
    config_ids = {c.id for c in settings.configs}
    config_id, explicit_model = parse_model_ref(request_model, config_ids)
    bound = _bind_config(settings, config_id)

    if bound is not None:
        model = (
            explicit_model
            or bound.active_model_id
            or (bound.models[0] if bound.models else "")
            or DEFAULT_OPENAI_MODEL
        )
        return ResolvedEndpoint(
            base_url=bound.base_url,
            api_key=bound.api_key,
            model=model,
            provider_type=bound.provider_type or "openai",
            max_tokens=bound.max_tokens or 8192,
            thinking_enabled=bound.thinking_enabled,
            thinking_budget=bound.thinking_budget or 10000,
            timeout=settings.timeout,
            config_id=bound.id,
        )

    # Legacy single-config: `model` may list several, comma-separated
    legacy_models = [m.strip() for m in (settings.model or "").split(",") if m.strip()]
    model = explicit_model or (legacy_models[0] if legacy_models else "") or DEFAULT_OPENAI_MODEL
    return ResolvedEndpoint(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=model,
        provider_type=settings.provider_type or "openai",
        max_tokens=settings.max_tokens or 8192,
        thinking_enabled=settings.thinking_enabled,
        thinking_budget=settings.thinking_budget or 10000,
        timeout=settings.timeout,
    )


def validate_endpoint(endpoint: ResolvedEndpoint) -> None:
    if not endpoint.base_url:
        raise ConfigurationError("Base URL is missing.", code="MISSING_BASE_URL")
    if not endpoint.model:
        raise ConfigurationError("Model ID is missing.", code="MISSING_MODEL")


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _as_data_url(image: str) -> str:
    if image.startswith("data:"):
        return image
    return f"data:image/png;base64,{image}"


def _openai_content(text: str, images: list[str]) -> str | list[dict]:
    if not images:
        return text or ""
    content: list[dict] = []
    if text:
        content.append({"type": "text", "text": text})
    for img in images:
        content.append({"type": "image_url", "image_url": {"url": _as_data_url(img)}})
    return content


def _claude_content(text: str, images: list[str]) -> str | list[dict]:
    if not images:
        return text or ""
    content: list[dict] = []
    if text:
        content.append({"type": "text", "text": text})
    for img in images:
        data, media_type = split_data_url(img, "image/png")
        content.append({
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        })
    return content


def _history_images(msg: Message) -> list[str]:
    return list(msg.attachments or []) if msg.role == "user" else []


def build_openai_payload(request: ChatRequest, endpoint: ResolvedEndpoint) -> dict:
    messages: list[dict] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})
    for msg in request.history:
        messages.append({
            "role": "assistant" if msg.role == "assistant" else "user",
            "content": _openai_content(msg.text, _history_images(msg)),
        })
    messages.append({
        "role": "user",
        "content": _openai_content(request.text, [f.data_url for f in request.files]),
    })
    return {"model": endpoint.model, "messages": messages, "stream": True}


def build_claude_payload(request: ChatRequest, endpoint: ResolvedEndpoint) -> dict:
    messages: list[dict] = []
    for msg in request.history:
        messages.append({
            "role": "assistant" if msg.role == "assistant" else "user",
            "content": _claude_content(msg.text, _history_images(msg)),
        })
    messages.append({
        "role": "user",
        "content": _claude_content(request.text, [f.data_url for f in request.files]),
    })

    payload: dict = {
        "model": endpoint.model,
        "messages": messages,
        "max_tokens": endpoint.max_tokens,
        "stream": True,
    }
    # Claude takes the system prompt as a top-level field
    if request.system_instruction:
        payload["system"] = request.system_instruction
    if endpoint.thinking_enabled:
        payload["thinking"] = {"type": "enabled", "budget_tokens": endpoint.thinking_budget}
        payload["max_tokens"] = max(payload["max_tokens"], CLAUDE_THINKING_MIN_TOKENS)
    return payload


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class OpenAICompatibleProvider(BaseProvider):
    """Streams from /chat/completions or /v1/messages and normalizes the SSE."""

    name = "openai"

    def build_request(self, request: ChatRequest, endpoint: ResolvedEndpoint) -> tuple[str, dict, dict]:
        """Return (url, headers, payload) for the endpoint's dialect."""
        base = endpoint.base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if endpoint.is_claude:
            headers["anthropic-version"] = CLAUDE_API_VERSION
            if endpoint.api_key:
                headers["x-api-key"] = endpoint.api_key
            return f"{base}/v1/messages", headers, build_claude_payload(request, endpoint)

        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        return f"{base}/chat/completions", headers, build_openai_payload(request, endpoint)

    async def send(
        self,
        request: ChatRequest,
        endpoint: ResolvedEndpoint,
        on_update: UpdateSink | None = None,
    ) -> ChatResult:
        validate_endpoint(endpoint)

        url, headers, payload = self.build_request(request, endpoint)
        normalizer = (
            ClaudeStreamNormalizer(on_update)
            if endpoint.is_claude
            else OpenAIStreamNormalizer(on_update)
        )
        logger.debug("%s: requesting %s at %s", normalizer.name, endpoint.model, url)

        with self.transport_errors(endpoint.timeout):
            async with self.client(endpoint.timeout) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    await self.check_response(resp)
                    result = await self.pump(resp, normalizer, request.cancellation)

        return ChatResult(
            text=result.text,
            thoughts=result.thoughts,
            images=[],
            continuation_context=None,
        )
