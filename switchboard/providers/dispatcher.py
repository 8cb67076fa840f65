"""
Provider dispatcher: one request contract in, one ChatResult out.

Routes a ChatRequest to the transport matching the settings variant. The
settings union is closed; adding a fifth variant without a branch here is a
type error (assert_never).

Failure contract:
  - SwitchboardError from a transport  -> ChatResult(status="error")
  - CancellationError                  -> re-raised, never an error result
  - anything else                      -> a bug; propagates
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, assert_never

import httpx

from switchboard.cancellation import UpdateSink, guarded_sink
from switchboard.errors import CancellationError, ConfigurationError, SwitchboardError
from switchboard.models import (
    ChatRequest,
    ChatResult,
    DocumentProcessingSettings,
    GrokSettings,
    OfficialSettings,
    OpenAICompatibleSettings,
    ProviderSettings,
    WebClientSettings,
)
from switchboard.providers.accounts import AccountPool
from switchboard.providers.grok import GrokProvider
from switchboard.providers.ocr import MistralOCRClient
from switchboard.providers.official import OfficialProvider
from switchboard.providers.openai_compat import (
    OpenAICompatibleProvider,
    resolve_endpoint,
    validate_endpoint,
)
from switchboard.providers.retry import RetryPolicy
from switchboard.providers.web import DEFAULT_WEB_MODEL, GeminiWebProvider

logger = logging.getLogger(__name__)

StatusSink = Callable[[str], None]

OCR_HEADER = "[Document OCR Results]"


def resolve_web_model(request: ChatRequest, settings: WebClientSettings) -> str:
    return (
        request.model
        or settings.active_model_id
        or (settings.models[0] if settings.models else "")
        or DEFAULT_WEB_MODEL
    )


def web_prompt(request: ChatRequest) -> str:
    """The web backend has no system field; fold it into the prompt."""
    if request.system_instruction:
        return f"{request.system_instruction}\n\nQuestion: {request.text}"
    return request.text


class ProviderDispatcher:
    """
    Owns one instance of each transport plus the web account pool.
    `transport` is handed to every httpx client (tests use MockTransport).
    """

    def __init__(
        self,
        pool: AccountPool | None = None,
        retry_policy: RetryPolicy | None = None,
        document_settings: DocumentProcessingSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.pool = pool or AccountPool()
        self.retry_policy = retry_policy or RetryPolicy()
        self.document_settings = document_settings or DocumentProcessingSettings()
        self.official = OfficialProvider(transport)
        self.web = GeminiWebProvider(transport)
        self.openai = OpenAICompatibleProvider(transport)
        self.grok = GrokProvider(transport)
        self.ocr = MistralOCRClient(transport)

    async def dispatch(
        self,
        request: ChatRequest,
        settings: ProviderSettings,
        on_update: UpdateSink | None = None,
        on_status: StatusSink | None = None,
    ) -> ChatResult:
        token = request.cancellation
        sink = guarded_sink(token, on_update)
        try:
            return await token.guard(self._route(request, settings, sink, on_status))
        except CancellationError:
            logger.info("Dispatch for session '%s' cancelled", request.session_id or "-")
            raise
        except SwitchboardError as e:
            logger.warning("Dispatch via %s failed [%s]: %s", type(settings).__name__, e.code, e.message)
            return ChatResult.failure(e.message)

    async def _route(
        self,
        request: ChatRequest,
        settings: ProviderSettings,
        sink: UpdateSink,
        on_status: StatusSink | None,
    ) -> ChatResult:
        if isinstance(settings, OfficialSettings):
            return await self._handle_official(request, settings, sink)
        elif isinstance(settings, WebClientSettings):
            return await self._handle_web(request, settings, sink)
        elif isinstance(settings, OpenAICompatibleSettings):
            return await self._handle_openai(request, settings, sink, on_status)
        elif isinstance(settings, GrokSettings):
            return await self._handle_grok(request, settings, sink)
        else:
            assert_never(settings)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_official(self, request, settings: OfficialSettings, sink) -> ChatResult:
        return await self.official.send(request, settings, sink)

    async def _handle_grok(self, request, settings: GrokSettings, sink) -> ChatResult:
        return await self.grok.send(request, settings, sink)

    async def _handle_openai(self, request, settings: OpenAICompatibleSettings, sink, on_status) -> ChatResult:
        endpoint = resolve_endpoint(request.model, settings)
        validate_endpoint(endpoint)
        if self.document_settings.enabled:
            request = await self._apply_document_processing(request, on_status)
        logger.debug("Routing to %s endpoint '%s' model '%s'",
                     endpoint.provider_type, endpoint.config_id or "legacy", endpoint.model)
        return await self.openai.send(request, endpoint, sink)

    async def _handle_web(self, request, settings: WebClientSettings, sink) -> ChatResult:
        model = resolve_web_model(request, settings)
        prompt = web_prompt(request)
        await self.pool.configure(settings.account_indices)
        await self.pool.check_model(model)
        await self.pool.seed(request.continuation_context)

        async def fetch(account_index: int) -> dict:
            return await self.web.fetch_context(account_index, settings)

        async def attempt():
            context = await self.pool.get_or_fetch(fetch)
            result, new_context = await self.web.send(
                prompt,
                context,
                model=model,
                settings=settings,
                files=request.files,
                on_update=sink,
                cancellation=request.cancellation,
            )
            await self.pool.update(new_context)
            return result, new_context

        result, context = await self.retry_policy.execute(attempt, self.pool, request.cancellation)
        return ChatResult(
            text=result.text,
            thoughts=result.thoughts,
            images=result.images,
            continuation_context=context,
        )

    # ------------------------------------------------------------------
    # Document OCR
    # ------------------------------------------------------------------

    async def _apply_document_processing(self, request: ChatRequest, on_status: StatusSink | None) -> ChatRequest:
        """OCR images/PDFs, append their text to the prompt, drop them from files."""
        targets = [f for f in request.files if f.is_image or f.is_pdf]
        if not targets:
            return request

        settings = self.document_settings
        if not settings.base_url or not settings.model:
            raise ConfigurationError(
                "Document processing model settings are incomplete. Please check settings.",
                code="MISSING_OCR_SETTINGS",
            )
        if not settings.api_key:
            raise ConfigurationError(
                "Document processing API key is missing. Please check settings.",
                code="MISSING_OCR_API_KEY",
            )

        sections: list[str] = []
        for n, attachment in enumerate(targets, start=1):
            name = attachment.name or f"Document {n}"
            if on_status is not None:
                on_status(f"Processing document... {name}")
            text = await self.ocr.extract_text(attachment, settings, request.cancellation)
            sections.append(f"{n}. {name}\n{text}")
        logger.info("OCR extracted %d document(s)", len(sections))

        ocr_block = OCR_HEADER + "\n" + "\n\n".join(sections)
        text = f"{request.text}\n\n{ocr_block}" if request.text else ocr_block
        remaining = tuple(f for f in request.files if not any(f is t for t in targets))
        return dataclasses.replace(request, text=text, files=remaining)
