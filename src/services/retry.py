"""Retry logic and error handling with Tenacity."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from openai import APIConnectionError as OpenAIConnectionError
from openai import APITimeoutError as OpenAITimeoutError
from tenacity import (
    AsyncRetrying,
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from src.exceptions import TransientInfraException
from src.utils.logger import log

T = TypeVar("T")

# === API Call Retry Decorators ===


def retry_on_api_error(max_attempts: int = 2):
    """Retry decorator for OpenAI and HTTP collaborator errors.

    Use for: Whisper transcription, OCR, media download

    Args:
        max_attempts: Maximum number of attempts (default: 2)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(
            (
                OpenAIConnectionError,
                OpenAITimeoutError,
                httpx.TransportError,
            )
        ),
        before_sleep=before_sleep_log(log, logging.WARNING),
        after=after_log(log, logging.INFO),
        reraise=True,
    )


def retry_on_network_error(max_attempts: int = 3):
    """Retry decorator for network/connection errors.

    Use for: Twilio REST sends

    Args:
        max_attempts: Maximum number of attempts (default: 3)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(
            (
                httpx.ConnectError,
                httpx.TimeoutException,
                ConnectionError,
                TimeoutError,
            )
        ),
        before_sleep=before_sleep_log(log, logging.WARNING),
        after=after_log(log, logging.INFO),
        reraise=True,
    )


# === Inline retry for executor side effects ===


async def retry_transient_once(fn: Callable[[], Awaitable[T]], delay: float = 0.2) -> T:
    """Run an async callable, retrying exactly once on a transient failure.

    The second TransientInfraException propagates to the caller, which turns
    it into a "try again" reply with pending state untouched.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(2),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(TransientInfraException),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()


# === Graceful Degradation Helpers ===


async def with_timeout_default(coro: Awaitable[T], timeout: float, default: Any, operation: str) -> Any:
    """Await a collaborator call, degrading to `default` on timeout or error.

    External calls never propagate as hard failures; they become
    "no opinion" for the caller.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        log.warning(f"⏱️ {operation} timed out after {timeout}s, continuing without it")
        return default
    except Exception as e:
        log.warning(f"⚠️ {operation} failed, continuing without it: {e}")
        return default
