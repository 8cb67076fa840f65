"""
End-to-end dispatcher tests over httpx.MockTransport.
"""

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest
from unittest.mock import AsyncMock

from switchboard.cancellation import CancellationToken
from switchboard.errors import CancellationError
from switchboard.models import (
    Attachment,
    ChatRequest,
    DocumentProcessingSettings,
    EndpointConfig,
    GrokSettings,
    Message,
    OfficialSettings,
    OpenAICompatibleSettings,
    WebClientSettings,
)
from switchboard.providers.dispatcher import ProviderDispatcher, resolve_web_model, web_prompt
from switchboard.providers.openai_compat import DEFAULT_OPENAI_MODEL, resolve_endpoint
from switchboard.providers.retry import RetryPolicy


def _sse_body(*chunks: str) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]})
        for c in chunks
    ]
    lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


class Recorder:
    def __init__(self):
        self.updates = []

    def __call__(self, text, thoughts):
        self.updates.append((text, thoughts))


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------

MULTI = OpenAICompatibleSettings(
    configs=(
        EndpointConfig(id="cfg_a", base_url="http://a", models=("m1", "m2"), active_model_id="m1"),
        EndpointConfig(id="cfg_b", base_url="http://b", models=("b1", "b2")),
    ),
    active_config_id="cfg_a",
)


def test_explicit_model_beats_active_model():
    assert resolve_endpoint("m2", MULTI).model == "m2"
    assert resolve_endpoint("", MULTI).model == "m1"


def test_compound_model_ref_binds_config():
    ep = resolve_endpoint("cfg_b::b2", MULTI)
    assert (ep.config_id, ep.base_url, ep.model) == ("cfg_b", "http://b", "b2")


def test_config_id_alone_uses_first_model():
    ep = resolve_endpoint("cfg_b", MULTI)
    assert (ep.config_id, ep.model) == ("cfg_b", "b1")


def test_placeholder_and_unknown_config_fall_back_to_active():
    assert resolve_endpoint("openai_custom", MULTI).config_id == "cfg_a"
    assert resolve_endpoint("cfg_missing::x", MULTI).config_id == "cfg_a"
    assert resolve_endpoint("cfg_missing::x", MULTI).model == "x"


def test_legacy_single_config():
    legacy = OpenAICompatibleSettings(base_url="http://l", model="alpha, beta")
    assert resolve_endpoint("", legacy).model == "alpha"
    assert resolve_endpoint("gamma", legacy).model == "gamma"
    assert resolve_endpoint("", OpenAICompatibleSettings(base_url="http://l")).model == DEFAULT_OPENAI_MODEL


def test_web_model_precedence():
    settings = WebClientSettings(models=("m1", "m2"), active_model_id="m1")
    assert resolve_web_model(ChatRequest(text="x", model="m2"), settings) == "m2"
    assert resolve_web_model(ChatRequest(text="x"), settings) == "m1"
    assert resolve_web_model(ChatRequest(text="x"), WebClientSettings(models=("m2",))) == "m2"


def test_web_prompt_folds_system_instruction():
    req = ChatRequest(text="What now?", system_instruction="Be brief.")
    assert web_prompt(req) == "Be brief.\n\nQuestion: What now?"
    assert web_prompt(ChatRequest(text="hi")) == "hi"


# ---------------------------------------------------------------------------
# OpenAI-compatible end to end
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_stream_end_to_end():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse_body("<thi", "nk>planning", "</think>Hi there"))

    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(handler))
    settings = OpenAICompatibleSettings(base_url="http://llm.local/v1/", api_key="sk-test", model="m1")
    rec = Recorder()

    result = await dispatcher.dispatch(
        ChatRequest(text="hello", system_instruction="sys",
                    history=(Message(role="user", text="q"), Message(role="assistant", text="a"))),
        settings,
        on_update=rec,
    )

    assert result.ok
    assert result.text == "Hi there"
    assert result.thoughts == "planning"
    assert result.continuation_context is None
    assert rec.updates[-1] == ("Hi there", "planning")
    assert all("<" not in text for text, _ in rec.updates)

    assert seen["url"] == "http://llm.local/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "m1"
    assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_claude_endpoint_headers_and_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        event = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "yo"}}
        return httpx.Response(200, content=f"data: {json.dumps(event)}\n\n".encode())

    settings = OpenAICompatibleSettings(configs=(
        EndpointConfig(id="cfg_c", base_url="https://api.anthropic.com", api_key="ak",
                       provider_type="claude", models=("claude-x",), thinking_enabled=True),
    ))
    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(handler))
    result = await dispatcher.dispatch(ChatRequest(text="hi", system_instruction="sys"), settings)

    assert result.text == "yo"
    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "ak"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["system"] == "sys"
    assert seen["body"]["thinking"] == {"type": "enabled", "budget_tokens": 10000}
    assert seen["body"]["max_tokens"] == 16000


@pytest.mark.asyncio
async def test_http_error_becomes_error_result():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Invalid key"}})

    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(handler))
    result = await dispatcher.dispatch(
        ChatRequest(text="x"), OpenAICompatibleSettings(base_url="http://x", model="m"))
    assert not result.ok
    assert result.error_text == "API Error (401): Invalid key"


@pytest.mark.asyncio
async def test_missing_base_url_is_error_result():
    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    result = await dispatcher.dispatch(ChatRequest(text="x"), OpenAICompatibleSettings(model="m"))
    assert result.status == "error"
    assert result.error_text == "Base URL is missing."


@pytest.mark.asyncio
async def test_official_non_json_body_is_error_result():
    dispatcher = ProviderDispatcher(
        transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>gateway</html>")))
    result = await dispatcher.dispatch(ChatRequest(text="x"), OfficialSettings(api_key="k"))
    assert result.status == "error"
    assert result.error_text == "API Error: invalid JSON body"


@pytest.mark.asyncio
async def test_official_missing_key_is_error_result():
    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    result = await dispatcher.dispatch(ChatRequest(text="x"), OfficialSettings())
    assert result.error_text == "API Key is missing. Please check settings."


@pytest.mark.asyncio
async def test_timeout_is_error_result():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(handler))
    result = await dispatcher.dispatch(
        ChatRequest(text="x"), OpenAICompatibleSettings(base_url="http://x", model="m", timeout=5))
    assert not result.ok
    assert result.error_text.startswith("Network Error")


@pytest.mark.asyncio
async def test_cancelled_request_raises_not_error_result():
    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    token = CancellationToken()
    token.cancel()
    with pytest.raises(CancellationError):
        await dispatcher.dispatch(
            ChatRequest(text="x", cancellation=token),
            OpenAICompatibleSettings(base_url="http://x", model="m"),
        )


# ---------------------------------------------------------------------------
# Document OCR preprocessing
# ---------------------------------------------------------------------------

OCR_SETTINGS = DocumentProcessingSettings(
    enabled=True, base_url="https://ocr.local/v1", api_key="ocr-key", model="ocr-1")


@pytest.mark.asyncio
async def test_ocr_text_appended_and_files_removed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ocr.local":
            seen["ocr_url"] = str(request.url)
            seen["ocr_body"] = json.loads(request.content)
            return httpx.Response(200, json={"pages": [{"markdown": "Invoice total 42"}]})
        seen["chat_body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse_body("Got it"))

    dispatcher = ProviderDispatcher(document_settings=OCR_SETTINGS, transport=httpx.MockTransport(handler))
    statuses = []
    scan = Attachment(data="aGVsbG8=", mime_type="image/png", name="scan.png")

    result = await dispatcher.dispatch(
        ChatRequest(text="Summarize", files=(scan,)),
        OpenAICompatibleSettings(base_url="http://llm", model="m"),
        on_status=statuses.append,
    )

    assert result.text == "Got it"
    assert statuses == ["Processing document... scan.png"]
    assert seen["ocr_url"] == "https://ocr.local/v1/ocr"
    assert seen["ocr_body"]["document"] == {"type": "image_url", "image_url": "data:image/png;base64,aGVsbG8="}
    content = seen["chat_body"]["messages"][-1]["content"]
    assert isinstance(content, str)
    assert content == "Summarize\n\n[Document OCR Results]\n1. scan.png\nInvoice total 42"


@pytest.mark.asyncio
async def test_ocr_missing_api_key_aborts_dispatch():
    dispatcher = ProviderDispatcher(
        document_settings=DocumentProcessingSettings(enabled=True, base_url="https://ocr.local/v1", model="ocr-1"),
        transport=httpx.MockTransport(lambda r: httpx.Response(200, content=_sse_body("no"))),
    )
    result = await dispatcher.dispatch(
        ChatRequest(text="x", files=(Attachment(data="eA==", mime_type="application/pdf", name="a.pdf"),)),
        OpenAICompatibleSettings(base_url="http://llm", model="m"),
    )
    assert not result.ok
    assert "API key is missing" in result.error_text


@pytest.mark.asyncio
async def test_missing_base_url_fails_before_any_ocr_call():
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, json={"pages": [{"markdown": "text"}]})

    dispatcher = ProviderDispatcher(
        document_settings=DocumentProcessingSettings(enabled=True, api_key="ocr-key"),
        transport=httpx.MockTransport(handler),
    )
    result = await dispatcher.dispatch(
        ChatRequest(text="x", files=(Attachment(data="eA==", mime_type="image/png", name="p.png"),)),
        OpenAICompatibleSettings(model="m"),
    )
    assert result.error_text == "Base URL is missing."
    assert calls == []


@pytest.mark.asyncio
async def test_ocr_empty_response_aborts_dispatch():
    def handler(request):
        if request.url.host == "ocr.local":
            return httpx.Response(200, json={"pages": []})
        return httpx.Response(200, content=_sse_body("should not get here"))

    dispatcher = ProviderDispatcher(document_settings=OCR_SETTINGS, transport=httpx.MockTransport(handler))
    result = await dispatcher.dispatch(
        ChatRequest(text="x", files=(Attachment(data="eA==", mime_type="image/jpeg", name="p.jpg"),)),
        OpenAICompatibleSettings(base_url="http://llm", model="m"),
    )
    assert result.error_text == "OCR response was empty."


# ---------------------------------------------------------------------------
# Gemini web session
# ---------------------------------------------------------------------------

PAGE = '<script>window.WIZ_global_data = {"SNlM0e":"tok123","cfb2h":"boq_bl_1"};</script>'


def _web_body(text, conv="c_1", resp="r_1", choice="rc_1") -> bytes:
    inner = [None, [conv, resp], None, None, [[choice, [text]]]]
    frame = json.dumps([["wrb.fr", None, json.dumps(inner)]])
    return f")]}}'\n\n{len(frame)}\n{frame}\n".encode()


class WebBackend:
    """Fake gemini.google.com; `replies` are consumed one per StreamGenerate call."""

    def __init__(self, replies, page=PAGE):
        self.replies = list(replies)
        self.page = page
        self.page_hits = []
        self.posts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.page_hits.append(request.url.path)
            return httpx.Response(200, text=self.page)
        self.posts.append(request)
        return self.replies.pop(0)


@pytest.mark.asyncio
async def test_web_round_trip_returns_context():
    backend = WebBackend([httpx.Response(200, content=_web_body("Hello from web"))])
    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(backend))
    rec = Recorder()

    result = await dispatcher.dispatch(
        ChatRequest(text="hi", system_instruction="Be nice"),
        WebClientSettings(account_indices=(0,)),
        on_update=rec,
    )

    assert result.ok
    assert result.text == "Hello from web"
    assert rec.updates == [("Hello from web", None)]
    ctx = result.continuation_context
    assert ctx["conversation_id"] == "c_1"
    assert ctx["response_id"] == "r_1"
    assert ctx["choice_id"] == "rc_1"
    assert ctx["at"] == "tok123"

    assert backend.page_hits == ["/u/0/app"]
    post = backend.posts[0]
    assert post.url.params["bl"] == "boq_bl_1"
    form = parse_qs(post.content.decode())
    assert form["at"] == ["tok123"]
    inner = json.loads(json.loads(form["f.req"][0])[1])
    assert inner[0][0] == "Be nice\n\nQuestion: hi"


@pytest.mark.asyncio
async def test_web_retries_on_empty_reply_then_succeeds():
    backend = WebBackend([
        httpx.Response(200, content=b")]}'\n\n"),
        httpx.Response(200, content=_web_body("second time lucky")),
    ])
    sleep = AsyncMock()
    dispatcher = ProviderDispatcher(
        retry_policy=RetryPolicy(sleep=sleep, rng=lambda: 0.0),
        transport=httpx.MockTransport(backend),
    )
    result = await dispatcher.dispatch(ChatRequest(text="hi"), WebClientSettings())

    assert result.text == "second time lucky"
    assert len(backend.posts) == 2
    # context was invalidated, so the page was scraped again
    assert len(backend.page_hits) == 2
    sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_web_rotates_accounts_on_auth_failure():
    backend = WebBackend([
        httpx.Response(401, text="nope"),
        httpx.Response(200, content=_web_body("from account 1")),
    ])
    dispatcher = ProviderDispatcher(
        retry_policy=RetryPolicy(sleep=AsyncMock(), rng=lambda: 0.0),
        transport=httpx.MockTransport(backend),
    )
    result = await dispatcher.dispatch(ChatRequest(text="hi"), WebClientSettings(account_indices=(0, 1)))

    assert result.text == "from account 1"
    assert backend.page_hits == ["/u/0/app", "/u/1/app"]
    assert result.continuation_context["account_index"] == 1


@pytest.mark.asyncio
async def test_web_not_logged_in_exhausts_retries():
    backend = WebBackend([], page="<html>sign in</html>")
    dispatcher = ProviderDispatcher(
        retry_policy=RetryPolicy(sleep=AsyncMock(), rng=lambda: 0.0),
        transport=httpx.MockTransport(backend),
    )
    result = await dispatcher.dispatch(ChatRequest(text="hi"), WebClientSettings())

    assert not result.ok
    assert result.error_text.startswith("Not logged in")
    assert len(backend.page_hits) == 2
    assert backend.posts == []


@pytest.mark.asyncio
async def test_web_continues_stored_conversation():
    backend = WebBackend([httpx.Response(200, content=_web_body("continued", conv="c_old", resp="r_2"))])
    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(backend))
    stored = {"account_index": 0, "at": "tok_old", "bl": "bl_old",
              "conversation_id": "c_old", "response_id": "r_1", "choice_id": "rc_1"}

    result = await dispatcher.dispatch(
        ChatRequest(text="and then?", continuation_context=stored), WebClientSettings())

    assert result.continuation_context["response_id"] == "r_2"
    assert backend.page_hits == []
    form = parse_qs(backend.posts[0].content.decode())
    inner = json.loads(json.loads(form["f.req"][0])[1])
    assert inner[2] == ["c_old", "r_1", "rc_1"]


@pytest.mark.asyncio
async def test_web_upload_sends_decoded_file_bytes():
    raw = b"\x89PNG\r\n\x1a\nrawbytes"
    uploads = []
    backend = WebBackend([httpx.Response(200, content=_web_body("nice picture"))])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "content-push.googleapis.com":
            uploads.append(request.content)
            return httpx.Response(200, text="/contrib_service/ttl_1d/ref_1\n")
        return backend(request)

    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(handler))
    pic = Attachment(data=base64.b64encode(raw).decode("ascii"), mime_type="image/png", name="pic.png")
    result = await dispatcher.dispatch(ChatRequest(text="what is this?", files=(pic,)), WebClientSettings())

    assert result.text == "nice picture"
    (body,) = uploads
    assert raw in body
    assert base64.b64encode(raw) not in body
    form = parse_qs(backend.posts[0].content.decode())
    assert "/contrib_service/ttl_1d/ref_1" in form["f.req"][0]


# ---------------------------------------------------------------------------
# Grok
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_grok_dispatch_streams_lines():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        lines = [
            json.dumps({"result": {"response": {"token": "Hi", "isThinking": False}}}),
            json.dumps({"result": {"response": {"token": "<grok:render>x</grok:render>"}}}),
            json.dumps({"result": {"response": {"token": "!"}}}),
        ]
        return httpx.Response(200, content="\n".join(lines).encode())

    dispatcher = ProviderDispatcher(transport=httpx.MockTransport(handler))
    result = await dispatcher.dispatch(ChatRequest(text="yo", model="grok-4-fast"), GrokSettings())

    assert result.text == "Hi!"
    assert seen["body"]["modelName"] == "grok-4-mini-thinking-tahoe"
    assert seen["body"]["modelMode"] == "MODEL_MODE_GROK_4_MINI_THINKING"
    assert seen["body"]["message"] == "User: yo"
