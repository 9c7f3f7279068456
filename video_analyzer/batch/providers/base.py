import time
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from video_analyzer.batch.rate_limiter import RateLimiter

logger = logging.getLogger("providers")


class RawSegment(BaseModel):
    """Transcribed span, relative to the start of the audio chunk."""
    start: float
    end: float
    text: str
    confidence: float = 0.95


class ProviderResult(BaseModel):
    text: str = ""
    confidence: float = 0.0
    provider: str = ""
    processing_time_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None
    segments: List[RawSegment] = Field(default_factory=list)

    @classmethod
    def empty(cls, provider: str = "none", error: Optional[str] = None) -> "ProviderResult":
        return cls(provider=provider, success=False, error=error)


class CapabilityProvider(ABC):
    """
    One vendor behind one RateLimiter. Routers and pipelines only use
    process(), is_available() and get_stats().
    """

    def __init__(self, name: str, priority: int = 1, enabled: bool = True, limiter: Optional[RateLimiter] = None):
        self.name = name
        self.priority = priority
        self.enabled = enabled
        self.limiter = limiter or RateLimiter(name)

    @abstractmethod
    async def _call(self, payload: Any) -> ProviderResult:
        """Single vendor call; raises on failure."""

    async def process(self, payload: Any) -> ProviderResult:
        started = time.monotonic()
        result = await self.limiter.execute(self._call, payload)
        result.provider = self.name
        result.processing_time_ms = (time.monotonic() - started) * 1000
        return result

    def is_available(self) -> bool:
        return self.enabled and self.limiter.is_available()

    def mark_unavailable(self, duration: Optional[float] = None) -> float:
        return self.limiter.mark_unavailable(duration)

    @property
    def failure_rate(self) -> float:
        return self.limiter.failure_rate

    @property
    def average_latency_ms(self) -> float:
        return self.limiter.average_latency_ms

    def get_stats(self) -> dict:
        return {
            **self.limiter.get_stats(),
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "is_available": self.is_available(),
        }
