"""
Account pool for the Gemini web provider.

Single owner of the round-robin cursor over configured account indices and
of the cached continuation context. Every mutation goes through one
asyncio.Lock, so concurrent dispatches never interleave a rotation with a
context fetch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

CONVERSATION_KEYS = ("conversation_id", "response_id", "choice_id")


class AccountPool:
    """Round-robin account cursor plus the cached web context."""

    def __init__(self, indices: tuple[int, ...] | list[int] = (0,)):
        self._indices: tuple[int, ...] = tuple(indices) or (0,)
        self._cursor = 0
        self._context: dict | None = None
        self._model: str | None = None
        self._lock = asyncio.Lock()

    @property
    def account_count(self) -> int:
        return len(self._indices)

    @property
    def current_account(self) -> int:
        return self._indices[self._cursor]

    @property
    def context(self) -> dict | None:
        return self._context

    async def configure(self, indices: tuple[int, ...] | list[int]) -> None:
        """Apply the account list from settings; a changed list resets the pool."""
        new = tuple(indices) or (0,)
        async with self._lock:
            if new == self._indices:
                return
            logger.info("Account list changed %s -> %s", list(self._indices), list(new))
            self._indices = new
            self._cursor = 0
            self._context = None

    async def rotate(self) -> int:
        """Advance the cursor; returns the newly selected account index."""
        async with self._lock:
            previous = self.current_account
            self._cursor = (self._cursor + 1) % len(self._indices)
            logger.info("Rotating account %d -> %d", previous, self.current_account)
            return self.current_account

    async def invalidate(self) -> None:
        async with self._lock:
            self._context = None

    async def check_model(self, model: str) -> None:
        """A different model can't continue the previous model's conversation."""
        async with self._lock:
            if self._model is not None and self._model != model and self._context:
                logger.debug("Model changed %s -> %s, starting a new conversation", self._model, model)
                for key in CONVERSATION_KEYS:
                    self._context[key] = ""
            self._model = model

    async def seed(self, context: dict | None) -> None:
        """
        Point the cache at the conversation this dispatch continues.

        None means a fresh conversation: page tokens are kept, conversation
        ids are cleared. A stored context for an account that is no longer
        configured is ignored.
        """
        async with self._lock:
            if context is None:
                if self._context:
                    self._context = {**self._context, **{k: "" for k in CONVERSATION_KEYS}}
                return
            if context.get("account_index") not in self._indices:
                logger.debug("Ignoring stored context for unconfigured account %s", context.get("account_index"))
                return
            self._cursor = self._indices.index(context["account_index"])
            self._context = dict(context)

    async def get_or_fetch(self, fetch: Callable[[int], Awaitable[dict]]) -> dict:
        """Return the cached context for the current account, fetching if needed."""
        async with self._lock:
            account = self.current_account
            if self._context is None or self._context.get("account_index") != account:
                self._context = await fetch(account)
            return dict(self._context)

    async def update(self, context: dict) -> None:
        async with self._lock:
            self._context = dict(context)
