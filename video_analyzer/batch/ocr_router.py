"""
Routes OCR requests over a pool of interchangeable providers.

Strategies:
  priority       lowest priority number first
  round_robin    rotate through available providers
  load_balanced  lowest score = failure_rate*100 + avg_latency_ms/100 + priority*10

A provider whose retries are exhausted on a transient error is put on cooldown
(see RateLimiter.mark_unavailable) and skipped until it recovers.
"""
import time
import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from video_analyzer.batch.providers.base import CapabilityProvider, ProviderResult
from video_analyzer.batch.rate_limiter import classify_error
from video_analyzer.core.exceptions import AllProvidersFailedError

logger = logging.getLogger("ocr_router")

STRATEGIES = ("priority", "round_robin", "load_balanced")


class OcrRouter:
    def __init__(
        self,
        providers: Iterable[CapabilityProvider],
        strategy: str = "load_balanced",
        max_parallel: int = 30,
        long_video_threshold: float = 3600.0,
        long_video_multiplier: int = 2,
    ):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown routing strategy: {strategy}")
        self.providers: List[CapabilityProvider] = sorted(providers, key=lambda p: p.priority)
        self.strategy = strategy
        self.max_parallel = max_parallel
        self.long_video_threshold = long_video_threshold
        self.long_video_multiplier = long_video_multiplier
        self._rr_index = 0
        self.provider_usage: Counter = Counter()
        self.provider_failures: Counter = Counter()

    def available_providers(self) -> List[CapabilityProvider]:
        return [p for p in self.providers if p.is_available()]

    @staticmethod
    def score(provider: CapabilityProvider) -> float:
        return provider.failure_rate * 100 + provider.average_latency_ms / 100 + provider.priority * 10

    def _ordered(self, providers: Sequence[CapabilityProvider]) -> List[CapabilityProvider]:
        providers = list(providers)
        if not providers:
            return providers
        if self.strategy == "priority":
            return sorted(providers, key=lambda p: p.priority)
        if self.strategy == "round_robin":
            start = self._rr_index % len(providers)
            self._rr_index += 1
            return providers[start:] + providers[:start]
        return sorted(providers, key=lambda p: (self.score(p), p.priority))

    def select_provider(self) -> Optional[CapabilityProvider]:
        ordered = self._ordered(self.available_providers())
        return ordered[0] if ordered else None

    async def process_with_fallback(self, item: Any, preferred: Optional[CapabilityProvider] = None) -> ProviderResult:
        """Try providers in strategy order until one succeeds; raise with every error otherwise."""
        candidates = self._ordered(self.available_providers())
        if preferred is not None and preferred in candidates:
            candidates.remove(preferred)
            candidates.insert(0, preferred)

        errors: Dict[str, str] = {}
        for provider in candidates:
            try:
                result = await provider.process(item)
            except Exception as e:
                errors[provider.name] = str(e)
                self.provider_failures[provider.name] += 1
                logger.warning("[OCR_ROUTER] %s failed, trying next provider: %s", provider.name, e)
                if classify_error(e) == "retryable":
                    provider.mark_unavailable()
                continue
            self.provider_usage[provider.name] += 1
            return result

        raise AllProvidersFailedError(errors)

    def effective_parallelism(self, video_duration: Optional[float] = None) -> int:
        if video_duration and video_duration > self.long_video_threshold:
            return self.max_parallel * self.long_video_multiplier
        return self.max_parallel

    async def process_parallel(
        self,
        items: Sequence[Any],
        video_duration: Optional[float] = None,
    ) -> Tuple[List[ProviderResult], dict]:
        """
        OCR every item under one global concurrency cap. Items never hang on
        provider availability: with no provider left they resolve to an empty
        result from provider "none".
        """
        limit = self.effective_parallelism(video_duration)
        sem = asyncio.Semaphore(limit)
        started = time.monotonic()

        async def one(index, item):
            async with sem:
                available = self.available_providers()
                if not available:
                    return ProviderResult.empty("none", "no OCR provider available")
                # round_robin rotates inside process_with_fallback; load_balanced spreads by index
                preferred = None
                if self.strategy == "load_balanced":
                    ordered = self._ordered(available)
                    preferred = ordered[index % len(ordered)]
                try:
                    return await self.process_with_fallback(item, preferred=preferred)
                except AllProvidersFailedError as e:
                    return ProviderResult.empty("none", str(e))

        results = await asyncio.gather(*(one(i, item) for i, item in enumerate(items)))

        usage = Counter(r.provider for r in results if r.success)
        stats = {
            "total": len(results),
            "succeeded": sum(1 for r in results if r.success),
            "failed": sum(1 for r in results if not r.success),
            "provider_usage": dict(usage),
            "processing_time_ms": round((time.monotonic() - started) * 1000, 1),
            "parallelism": limit,
        }
        logger.info(
            "[OCR_ROUTER] %d items: %d ok, %d failed, usage=%s, %.0fms (parallel=%d)",
            stats["total"], stats["succeeded"], stats["failed"], stats["provider_usage"],
            stats["processing_time_ms"], limit,
        )
        return list(results), stats

    def get_stats(self) -> dict:
        return {
            "strategy": self.strategy,
            "providers": [p.get_stats() for p in self.providers],
            "usage": dict(self.provider_usage),
            "failures": dict(self.provider_failures),
        }
