"""
Base provider abstraction.
Every transport (official API, web session, OpenAI/Claude, Grok, OCR) builds
its own payload but shares client construction, HTTP error mapping and the
line pump that feeds a stream normalizer.
"""

from __future__ import annotations

import abc
import logging
from contextlib import contextmanager

import httpx

from switchboard.cancellation import CancellationToken
from switchboard.errors import NetworkGlitch, TransportError, extract_error_text
from switchboard.streaming import StreamNormalizer, StreamResult

logger = logging.getLogger(__name__)


class BaseProvider(abc.ABC):
    """
    Abstract base for provider transports.
    `transport` lets tests (or a proxying caller) swap the httpx transport.
    """

    name = "base"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def client(self, timeout: float, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, **kwargs)

    @contextmanager
    def transport_errors(self, timeout: float):
        """Map httpx timeouts and connection failures to NetworkGlitch."""
        try:
            yield
        except httpx.TimeoutException as e:
            logger.warning("Provider '%s' timed out after %.0fs", self.name, timeout)
            raise NetworkGlitch(f"Network Error: timed out after {timeout:.0f}s") from e
        except httpx.TransportError as e:
            logger.warning("Provider '%s' transport failed: %s", self.name, e)
            raise NetworkGlitch(f"Network Error: {e}") from e

    async def check_response(self, resp: httpx.Response, label: str = "API Error") -> None:
        """Raise TransportError with status and best-effort error text on non-2xx."""
        if 200 <= resp.status_code < 300:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        message = extract_error_text(body)[:500]
        raise TransportError(
            f"{label} ({resp.status_code}): {message}",
            status_code=resp.status_code,
            provider=self.name,
        )

    def read_json(self, resp: httpx.Response, label: str = "API Error") -> dict:
        """Parse a body that must be a JSON object; anything else is a TransportError."""
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(
                f"{label}: invalid JSON body",
                status_code=resp.status_code,
                provider=self.name,
            ) from e
        if not isinstance(data, dict):
            raise TransportError(
                f"{label}: expected a JSON object, got {type(data).__name__}",
                status_code=resp.status_code,
                provider=self.name,
            )
        return data

    @staticmethod
    async def pump(
        resp: httpx.Response,
        normalizer: StreamNormalizer,
        token: CancellationToken,
    ) -> StreamResult:
        """Feed response lines into the normalizer until the body ends."""
        async for line in resp.aiter_lines():
            token.raise_if_cancelled()
            normalizer.feed_line(line)
        token.raise_if_cancelled()
        return normalizer.finish()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
