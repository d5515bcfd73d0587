"""Bounded retry for transport-level failures (never for HTTP status errors)."""

from __future__ import annotations

import asyncio

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

TRANSIENT_EXCEPTIONS = (aiohttp.ClientConnectionError, asyncio.TimeoutError)


def transport_retry(attempts: int, max_wait: float = 10.0) -> AsyncRetrying:
    """Retry connection errors and timeouts up to ``attempts`` total tries."""
    return AsyncRetrying(
        retry=retry_if_exception_type(TRANSIENT_EXCEPTIONS),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=1, min=1, max=max_wait),
        reraise=True,
    )
