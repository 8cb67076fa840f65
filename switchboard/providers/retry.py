"""
Retry policy for the Gemini web provider.

Session backends fail in two recoverable ways: the account dropped its login
(AUTH) or the request didn't come back with a usable frame (NETWORK). Both
are retried with exponential backoff, rotating to the next account when more
than one is configured. Anything else is fatal and surfaces unchanged.

    ATTEMPT -> SUCCESS
    ATTEMPT -> (AUTH|NETWORK, budget left) -> ROTATE_ACCOUNT -> BACKOFF_WAIT -> ATTEMPT
    ATTEMPT -> (OTHER or budget spent) -> FATAL_FAILURE
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from typing import Awaitable, Callable, TypeVar

from switchboard.cancellation import CancellationToken
from switchboard.errors import (
    AuthError,
    CancellationError,
    ConfigurationError,
    NetworkGlitch,
    SwitchboardError,
)
from switchboard.providers.accounts import AccountPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_PATTERNS = ("未登录", "Not logged in", "Sign in", "401", "403")
NETWORK_PATTERNS = (
    "No valid response found",
    "Network Error",
    "Failed to fetch",
    "Check network",
    "429",
)


class FailureKind(enum.Enum):
    AUTH = "auth"
    NETWORK = "network"
    OTHER = "other"


class RetryState(enum.Enum):
    ATTEMPT = "attempt"
    BACKOFF_WAIT = "backoff_wait"
    ROTATE_ACCOUNT = "rotate_account"
    SUCCESS = "success"
    FATAL_FAILURE = "fatal_failure"


def classify(exc: BaseException) -> FailureKind:
    """Type first, then the message patterns the web backend is known to use."""
    if isinstance(exc, ConfigurationError):
        return FailureKind.OTHER
    if isinstance(exc, AuthError):
        return FailureKind.AUTH
    if isinstance(exc, NetworkGlitch):
        return FailureKind.NETWORK
    message = str(exc)
    if any(p in message for p in AUTH_PATTERNS):
        return FailureKind.AUTH
    if any(p in message for p in NETWORK_PATTERNS):
        return FailureKind.NETWORK
    return FailureKind.OTHER


class RetryPolicy:
    """
    Bounded retry with rotation.

    `sleep` and `rng` are injectable so tests don't wait for real backoff.
    """

    def __init__(
        self,
        base: float = 2.0,
        jitter: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.base = base
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng

    @staticmethod
    def max_attempts(account_count: int) -> int:
        return 3 if account_count > 1 else 2

    def backoff_seconds(self, attempt: int) -> float:
        """base**attempt plus uniform jitter; attempt is 1-based."""
        return self.base ** attempt + self._rng() * self.jitter

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        pool: AccountPool,
        token: CancellationToken,
    ) -> T:
        max_attempts = self.max_attempts(pool.account_count)
        attempt = 1
        while True:
            token.raise_if_cancelled()
            logger.debug("%s %d/%d on account %d",
                         RetryState.ATTEMPT.name, attempt, max_attempts, pool.current_account)
            try:
                result = await operation()
            except CancellationError:
                raise
            except SwitchboardError as e:
                kind = classify(e)
                if kind is FailureKind.OTHER or attempt >= max_attempts:
                    logger.error(
                        "%s after %d/%d attempts (%s): %s",
                        RetryState.FATAL_FAILURE.name, attempt, max_attempts, kind.value, e,
                    )
                    raise

                if pool.account_count > 1:
                    logger.warning("%s after %s failure: %s", RetryState.ROTATE_ACCOUNT.name, kind.value, e)
                    await pool.rotate()
                await pool.invalidate()

                delay = self.backoff_seconds(attempt)
                logger.warning(
                    "%s %.1fs before attempt %d/%d (%s): %s",
                    RetryState.BACKOFF_WAIT.name, delay, attempt + 1, max_attempts, kind.value, e,
                )
                await token.guard(self._sleep(delay))
                attempt += 1
                continue

            logger.debug("%s on attempt %d", RetryState.SUCCESS.name, attempt)
            return result
