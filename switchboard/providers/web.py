"""
Gemini web-session provider.

Stateful: every exchange needs a page-scraped access token (`SNlM0e`) and
build label (`cfb2h`) for the selected Google account, plus the
conversation/response/choice ids from the previous reply. All of that lives
in one opaque continuation-context dict that the AccountPool caches.

The transport only knows how to fetch a context and send one prompt with it;
retries, rotation and caching are the dispatcher's business.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import random
import re

import httpx

from switchboard.cancellation import CancellationToken, UpdateSink
from switchboard.errors import AuthError, NetworkGlitch, TransportError
from switchboard.models import DEFAULT_WEB_BASE_URL, Attachment, WebClientSettings
from switchboard.providers.base import BaseProvider
from switchboard.streaming import GeminiWebNormalizer, StreamResult

logger = logging.getLogger(__name__)

DEFAULT_WEB_MODEL = "gemini-2.5-flash"
STREAM_PATH = "/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate"
UPLOAD_URL = "https://content-push.googleapis.com/upload"
UPLOAD_PUSH_ID = "feeds/mcudyrk2a4khkz"
MODEL_HEADER = "x-goog-ext-525001261-jspb"

# Web model name -> value of the model-selection header. Unlisted models
# are sent without the header and get the account default.
MODEL_HEADERS = {
    "gemini-2.5-flash": '[1,null,null,null,"71c2d248d3b102ff",null,null,0,[4]]',
    "gemini-2.5-pro": '[1,null,null,null,"4af6c7f5da75d65d",null,null,0,[4]]',
}

_SNLM0E_RE = re.compile(r'"SNlM0e":"(.*?)"')
_CFB2H_RE = re.compile(r'"cfb2h":"(.*?)"')


def empty_context(account_index: int, at: str, bl: str) -> dict:
    return {
        "account_index": account_index,
        "at": at,
        "bl": bl,
        "conversation_id": "",
        "response_id": "",
        "choice_id": "",
    }


def build_freq(prompt: str, context: dict, file_refs: list | None = None) -> str:
    """The doubly-encoded `f.req` form field."""
    message = [prompt, 0, None, file_refs or None]
    ids = [
        context.get("conversation_id") or "",
        context.get("response_id") or "",
        context.get("choice_id") or "",
    ]
    inner = json.dumps([message, None, ids])
    return json.dumps([None, inner])


class GeminiWebProvider(BaseProvider):
    """gemini.google.com StreamGenerate over the user's browser cookies."""

    name = "web"

    def _account_base(self, settings: WebClientSettings, account_index: int) -> str:
        base = (settings.base_url or DEFAULT_WEB_BASE_URL).rstrip("/")
        return f"{base}/u/{account_index}"

    @staticmethod
    def _check_status(resp: httpx.Response, account_index: int) -> None:
        if resp.status_code in (401, 403):
            raise AuthError(
                f"Not logged in ({resp.status_code}) for account {account_index}",
                account_index=account_index,
            )
        if resp.status_code == 429:
            raise NetworkGlitch("Rate limited (429)", account_index=account_index)

    async def fetch_context(self, account_index: int, settings: WebClientSettings) -> dict:
        """Scrape the access token and build label from the app page."""
        url = f"{self._account_base(settings, account_index)}/app"
        with self.transport_errors(settings.timeout):
            async with self.client(
                settings.timeout, cookies=settings.cookies or None, follow_redirects=True
            ) as client:
                resp = await client.get(url)
                self._check_status(resp, account_index)
                await self.check_response(resp, label="Gemini page error")
                page = resp.text

        at = _SNLM0E_RE.search(page)
        if not at:
            raise AuthError(
                "Not logged in. Please sign in to Gemini in your browser.",
                account_index=account_index,
            )
        bl = _CFB2H_RE.search(page)
        logger.debug("Fetched web context for account %d", account_index)
        return empty_context(account_index, at.group(1), bl.group(1) if bl else "")

    async def _upload(self, client: httpx.AsyncClient, attachment: Attachment) -> list:
        name = attachment.name or "file"
        try:
            raw = base64.b64decode(attachment.base64, validate=True)
        except binascii.Error as e:
            raise TransportError(f"Invalid file data for upload: {name}") from e
        resp = await client.post(
            UPLOAD_URL,
            headers={"Push-ID": UPLOAD_PUSH_ID},
            files={"file": (name, raw, attachment.effective_mime)},
        )
        await self.check_response(resp, label="Upload failed")
        return [[resp.text.strip()], name]

    async def send(
        self,
        prompt: str,
        context: dict,
        *,
        model: str,
        settings: WebClientSettings,
        files: tuple[Attachment, ...] = (),
        on_update: UpdateSink | None = None,
        cancellation: CancellationToken | None = None,
    ) -> tuple[StreamResult, dict]:
        """Send one prompt; returns the normalized result and the next context."""
        account_index = int(context.get("account_index", 0))
        url = f"{self._account_base(settings, account_index)}{STREAM_PATH}"
        params = {
            "bl": context.get("bl", ""),
            "_reqid": str(random.randint(100000, 999999)),
            "rt": "c",
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded;charset=utf-8"}
        if model in MODEL_HEADERS:
            headers[MODEL_HEADER] = MODEL_HEADERS[model]

        normalizer = GeminiWebNormalizer(on_update)
        token = cancellation or CancellationToken()

        with self.transport_errors(settings.timeout):
            async with self.client(settings.timeout, cookies=settings.cookies or None) as client:
                file_refs = [await self._upload(client, f) for f in files]
                data = {"f.req": build_freq(prompt, context, file_refs), "at": context.get("at", "")}
                async with client.stream("POST", url, params=params, data=data, headers=headers) as resp:
                    self._check_status(resp, account_index)
                    await self.check_response(resp)
                    result = await self.pump(resp, normalizer, token)

        if not normalizer.found:
            raise NetworkGlitch("No valid response found", account_index=account_index)

        new_context = dict(context)
        if normalizer.context:
            new_context.update(normalizer.context)
        return result, new_context
