import unittest

from video_analyzer.batch.ocr_router import OcrRouter
from video_analyzer.batch.providers.base import CapabilityProvider, ProviderResult
from video_analyzer.batch.rate_limiter import RateLimiter
from video_analyzer.core.exceptions import AllProvidersFailedError


class FakeProvider(CapabilityProvider):
    def __init__(self, name, priority=1, error=None):
        super().__init__(name, priority=priority, limiter=RateLimiter(name, max_retries=0, base_delay=0.001))
        self.error = error
        self.calls = 0

    async def _call(self, payload):
        self.calls += 1
        if self.error is not None:
            raise RuntimeError(self.error)
        return ProviderResult(text=f"{self.name}:{payload}", confidence=0.9)


class TestOcrRouter(unittest.IsolatedAsyncioTestCase):
    async def test_fails_over_to_next_provider(self):
        a = FakeProvider("a", priority=1, error="503 Service Unavailable")
        b = FakeProvider("b", priority=2)
        router = OcrRouter([a, b], strategy="priority")

        result = await router.process_with_fallback("frame")

        self.assertEqual(result.text, "b:frame")
        self.assertEqual(result.provider, "b")
        self.assertEqual(a.calls, 1)
        self.assertFalse(a.is_available())
        self.assertEqual(router.provider_failures["a"], 1)
        self.assertEqual(router.provider_usage["b"], 1)

    async def test_unavailable_provider_is_skipped(self):
        a = FakeProvider("a", priority=1, error="503 Service Unavailable")
        b = FakeProvider("b", priority=2)
        router = OcrRouter([a, b], strategy="priority")

        await router.process_with_fallback("first")
        await router.process_with_fallback("second")

        self.assertEqual(a.calls, 1)
        self.assertEqual(b.calls, 2)

    async def test_fatal_error_does_not_cool_down(self):
        a = FakeProvider("a", priority=1, error="401 Unauthorized")
        b = FakeProvider("b", priority=2)
        router = OcrRouter([a, b], strategy="priority")

        result = await router.process_with_fallback("frame")

        self.assertEqual(result.provider, "b")
        self.assertTrue(a.is_available())

    async def test_all_providers_failing_raises(self):
        a = FakeProvider("a", error="503")
        b = FakeProvider("b", priority=2, error="502")
        router = OcrRouter([a, b], strategy="priority")

        with self.assertRaises(AllProvidersFailedError) as ctx:
            await router.process_with_fallback("frame")
        self.assertEqual(set(ctx.exception.errors), {"a", "b"})

    async def test_parallel_with_no_providers_resolves_empty(self):
        router = OcrRouter([], strategy="load_balanced")

        results, stats = await router.process_parallel([b"1", b"2", b"3"])

        self.assertEqual(len(results), 3)
        self.assertTrue(all(r.provider == "none" and not r.success for r in results))
        self.assertEqual(stats["failed"], 3)

    async def test_parallel_spreads_over_providers(self):
        a = FakeProvider("a", priority=1)
        b = FakeProvider("b", priority=1)
        router = OcrRouter([a, b], strategy="round_robin")

        results, stats = await router.process_parallel(list(range(10)))

        self.assertEqual(stats["succeeded"], 10)
        self.assertEqual(a.calls + b.calls, 10)
        self.assertGreater(a.calls, 0)
        self.assertGreater(b.calls, 0)

    def test_long_video_doubles_parallelism(self):
        router = OcrRouter([], max_parallel=30, long_video_threshold=3600)
        self.assertEqual(router.effective_parallelism(1800), 30)
        self.assertEqual(router.effective_parallelism(7200), 60)
        self.assertEqual(router.effective_parallelism(None), 30)

    def test_unknown_strategy(self):
        with self.assertRaises(ValueError):
            OcrRouter([], strategy="random")


if __name__ == "__main__":
    unittest.main()
