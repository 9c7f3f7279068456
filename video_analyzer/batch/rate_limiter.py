"""
rate_limiter.py – the one place external per-item calls are throttled and retried.

RateLimiter.execute(fn, ...):
  1. take a concurrency slot (asyncio.Semaphore)
  2. take a sliding-window token (N requests per window)
  3. call fn
  4. on failure: fatal errors propagate immediately, retryable errors back off
     exponentially and try again up to max_retries times

Slots and tokens are released during backoff sleeps.
"""
import re
import time
import random
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional

import httpx
import openai

from video_analyzer.core.exceptions import ProviderError

logger = logging.getLogger("rate_limiter")

RETRYABLE_STATUS_RE = re.compile(r"\b(?:429|500|502|503|504)\b")
FATAL_STATUS_RE = re.compile(r"\b(?:401|403)\b")
FATAL_PATTERNS = ("api key", "apikey", "invalid", "unauthorized", "forbidden")
RETRYABLE_PATTERNS = (
    "timeout", "timed out", "overloaded",
    "rate limit", "network", "econnreset", "connection", "unavailable",
)

COOLDOWN_SCHEDULE = (30, 60, 120, 300)


def classify_error(exc: BaseException) -> str:
    """Return "fatal" or "retryable". Unknown errors are retried."""
    if isinstance(exc, ProviderError) and exc.fatal:
        return "fatal"
    if isinstance(exc, FileNotFoundError):
        return "fatal"
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError, openai.BadRequestError)):
        return "fatal"
    if isinstance(exc, (
        asyncio.TimeoutError,
        httpx.TransportError,
        openai.RateLimitError,
        openai.APITimeoutError,
        openai.APIConnectionError,
        openai.InternalServerError,
    )):
        return "retryable"

    message = str(exc).lower()
    if RETRYABLE_STATUS_RE.search(message):
        return "retryable"
    if FATAL_STATUS_RE.search(message) or any(p in message for p in FATAL_PATTERNS):
        return "fatal"
    if any(p in message for p in RETRYABLE_PATTERNS):
        return "retryable"
    return "retryable"


class RateLimiter:
    def __init__(
        self,
        name: str,
        max_concurrent: int = 5,
        requests_per_window: int = 60,
        window_seconds: float = 60.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        self.name = name
        self.max_concurrent = max_concurrent
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._window: deque = deque()

        self.current_concurrent = 0
        self.peak_concurrent = 0
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.retried_requests = 0
        self.average_latency_ms = 0.0

        self._unavailable_until = 0.0
        self._cooldown_level = 0

    # ---- availability ----

    def is_available(self) -> bool:
        return time.monotonic() >= self._unavailable_until

    def mark_unavailable(self, duration: Optional[float] = None) -> float:
        """
        Exclude this gateway for a cooldown (30s, 60s, 120s, 300s on repeated
        calls). An explicit duration wins when it is longer.
        """
        cooldown = COOLDOWN_SCHEDULE[min(self._cooldown_level, len(COOLDOWN_SCHEDULE) - 1)]
        if duration is not None and duration > cooldown:
            cooldown = duration
        self._cooldown_level += 1
        self._unavailable_until = time.monotonic() + cooldown
        logger.warning("[RATE_LIMITER] %s unavailable for %.0fs", self.name, cooldown)
        return cooldown

    def mark_available(self):
        self._unavailable_until = 0.0
        self._cooldown_level = 0

    # ---- throttling ----

    async def _acquire_token(self):
        while True:
            now = time.monotonic()
            while self._window and self._window[0] <= now - self.window_seconds:
                self._window.popleft()
            if len(self._window) < self.requests_per_window:
                self._window.append(now)
                return
            wait = self._window[0] + self.window_seconds - now
            logger.debug("[RATE_LIMITER] %s window full, waiting %.2fs", self.name, wait)
            await asyncio.sleep(max(wait, 0.01))

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay + random.uniform(0, delay * 0.1)

    async def execute(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        attempt = 0
        while True:
            async with self._semaphore:
                await self._acquire_token()
                self.current_concurrent += 1
                self.peak_concurrent = max(self.peak_concurrent, self.current_concurrent)
                self.total_requests += 1
                started = time.monotonic()
                try:
                    result = await fn(*args, **kwargs)
                except Exception as e:
                    self.failed_requests += 1
                    error = e
                else:
                    latency_ms = (time.monotonic() - started) * 1000
                    self._record_success(latency_ms)
                    return result
                finally:
                    self.current_concurrent -= 1

            kind = classify_error(error)
            if kind == "fatal":
                logger.error("[RATE_LIMITER] %s fatal error, not retrying: %s", self.name, error)
                raise error
            if attempt >= self.max_retries:
                logger.error(
                    "[RATE_LIMITER] %s giving up after %d attempts: %s", self.name, attempt + 1, error
                )
                raise error

            delay = self.backoff_delay(attempt)
            attempt += 1
            self.retried_requests += 1
            logger.warning(
                "[RATE_LIMITER] %s retry %d/%d in %.1fs: %s",
                self.name, attempt, self.max_retries, delay, error,
            )
            await asyncio.sleep(delay)

    def _record_success(self, latency_ms: float):
        self.successful_requests += 1
        if self.average_latency_ms == 0:
            self.average_latency_ms = latency_ms
        else:
            self.average_latency_ms = self.average_latency_ms * 0.9 + latency_ms * 0.1
        self._cooldown_level = 0

    @property
    def failure_rate(self) -> float:
        return self.failed_requests / self.total_requests if self.total_requests else 0.0

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "retried_requests": self.retried_requests,
            "average_latency_ms": round(self.average_latency_ms, 1),
            "current_concurrent": self.current_concurrent,
            "peak_concurrent": self.peak_concurrent,
            "is_available": self.is_available(),
        }
