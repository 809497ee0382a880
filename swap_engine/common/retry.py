from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp

from .logging import log_event

T = TypeVar("T")


def is_transient_network_error(error: BaseException) -> bool:
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError, asyncio.TimeoutError)):
        return True
    # Errors raised by our own clients carry an explicit flag.
    return bool(getattr(error, "transient", False))


def parse_retry_after_seconds(raw: str | None) -> float | None:
    """Seconds from a numeric ``Retry-After`` header; HTTP dates are ignored."""
    if raw is None or not raw.strip():
        return None
    try:
        seconds = float(raw.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff and jitter.

    ``retryable`` decides which errors are worth another attempt; anything else
    propagates on the first failure. Errors exposing ``retry_after_seconds``
    (rate-limit responses) stretch the delay up to ``max_backoff_seconds``.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.8
    max_backoff_seconds: float = 3.0
    jitter_ratio: float = 0.25
    retryable: Callable[[BaseException], bool] = field(default=is_transient_network_error)

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        base = max(0.0, self.backoff_seconds) * max(1, attempt)
        jitter = random.uniform(0.0, base * self.jitter_ratio) if base > 0 else 0.0
        delay = min(self.max_backoff_seconds, base + jitter)

        retry_after = getattr(error, "retry_after_seconds", None)
        if isinstance(retry_after, (int, float)) and retry_after > 0:
            delay = min(self.max_backoff_seconds, max(delay, float(retry_after)))
        return delay

    async def run(
        self,
        action: Callable[[], Awaitable[T]],
        *,
        logger: logging.Logger,
        event: str,
        message: str,
        **fields: Any,
    ) -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await action()
            except asyncio.CancelledError:
                raise
            except Exception as error:
                if attempt >= attempts or not self.retryable(error):
                    raise
                delay = self.delay_for(attempt, error)
                log_event(
                    logger,
                    level="warning",
                    event=event,
                    message=message,
                    attempt=attempt,
                    max_attempts=attempts,
                    backoff_seconds=round(delay, 3),
                    error=str(error),
                    error_type=type(error).__name__,
                    **fields,
                )
                await asyncio.sleep(delay)

        raise RuntimeError("retry loop exited without a result")
