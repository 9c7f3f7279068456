import os
import shutil
import tempfile
import unittest
from unittest.mock import AsyncMock

from video_analyzer.batch.batch_dispatcher import BatchDispatcher, batch_progress
from video_analyzer.batch.checkpoint_store import MemoryCheckpointStore
from video_analyzer.batch.ocr_router import OcrRouter
from video_analyzer.batch.providers.base import CapabilityProvider, ProviderResult
from video_analyzer.batch.rate_limiter import RateLimiter
from video_analyzer.batch.scene_detection import build_scenes, scene_frame_path
from video_analyzer.core.exceptions import BatchProcessingError
from video_analyzer.models.checkpoint import SceneCut
from video_analyzer.services.queue_service import InProcessBatchQueue
from video_analyzer.services.status_service import StatusSink


class FakeOcr(CapabilityProvider):
    def __init__(self):
        super().__init__("fake-ocr", limiter=RateLimiter("fake-ocr", max_concurrent=50, requests_per_window=10000))
        self.calls = 0

    async def _call(self, image):
        self.calls += 1
        return ProviderResult(text=image.decode(), confidence=0.9)


async def fake_frame(video_path, scene, frames_dir):
    path = scene_frame_path(frames_dir, scene)
    os.makedirs(frames_dir, exist_ok=True)
    with open(path, "wb") as f:
        f.write(f"text {scene.index}".encode())
    return path


def make_scenes(n, length=5.0):
    cuts = [SceneCut(timestamp=i * length, confidence=0.05) for i in range(n)]
    return build_scenes(cuts, n * length)


class DispatcherTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.mkdtemp()
        self.frames_dir = os.path.join(self.tmp, "frames")
        self.store = MemoryCheckpointStore()
        self.scenes = make_scenes(40)
        await self.store.get_or_create("u1", "user")
        await self.store.update("u1", total_scenes=len(self.scenes))
        self.provider = FakeOcr()
        self.sink = AsyncMock(spec=StatusSink)

    async def asyncTearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def dispatcher(self, router=None, **kwargs):
        return BatchDispatcher(
            self.store,
            router or OcrRouter([self.provider]),
            frame_extractor=fake_frame,
            status_sink=self.sink,
            batch_size=10,
            **kwargs,
        )


class TestBatchPlanning(unittest.TestCase):
    def test_batches_cover_all_scenes(self):
        dispatcher = BatchDispatcher(MemoryCheckpointStore(), OcrRouter([]), batch_size=10)
        batches = dispatcher.plan_batches("u1", 25)
        self.assertEqual([(b.start, b.end) for b in batches], [(0, 10), (10, 20), (20, 25)])
        self.assertTrue(batches[-1].is_last)
        self.assertEqual({b.total_batches for b in batches}, {3})

    def test_progress_range(self):
        self.assertEqual(batch_progress(0, 4), 41)
        self.assertEqual(batch_progress(3, 4), 89)
        self.assertEqual(batch_progress(0, 1), 89)


class TestInlineBatches(DispatcherTestCase):
    async def test_all_scenes_are_recognised(self):
        results = await self.dispatcher().run_all("u1", self.scenes, "video.mp4", self.frames_dir)

        self.assertEqual(len(results), 40)
        self.assertEqual(results[17], "text 17")
        cp = await self.store.load("u1")
        self.assertEqual(len(cp.ocr_results), 40)
        self.assertEqual(self.provider.calls, 40)

    async def test_resume_after_two_batches_only_does_the_rest(self):
        first_run = self.dispatcher()
        for batch in first_run.plan_batches("u1", 40)[:2]:
            await first_run.process_batch(batch, self.scenes, "video.mp4", self.frames_dir)
        self.assertEqual(self.provider.calls, 20)

        # worker restarted
        await self.dispatcher().run_all("u1", self.scenes, "video.mp4", self.frames_dir)

        self.assertEqual(self.provider.calls, 40)
        cp = await self.store.load("u1")
        self.assertEqual(sorted(cp.ocr_results), list(range(40)))

    async def test_failed_ocr_is_not_cached(self):
        router = OcrRouter([])
        await self.dispatcher(router).run_all("u1", self.scenes[:10], "video.mp4", self.frames_dir)

        cp = await self.store.load("u1")
        self.assertEqual(cp.ocr_results, {})

    async def test_permanent_batch_failure(self):
        router = OcrRouter([self.provider])
        router.process_parallel = AsyncMock(side_effect=RuntimeError("frame decoder crashed"))
        dispatcher = self.dispatcher(router, max_batch_retries=3)

        with self.assertRaises(BatchProcessingError) as ctx:
            await dispatcher.run_all("u1", self.scenes, "video.mp4", self.frames_dir)

        self.assertEqual(ctx.exception.batch_index, 0)
        self.assertEqual(router.process_parallel.await_count, 3)
        message = self.sink.mark_failed.await_args.args[1]
        self.assertTrue(message.startswith("Batch 1/4 failed after 3 retries"))


class TestQueuedBatches(DispatcherTestCase):
    async def test_batches_chain_until_done(self):
        queue = InProcessBatchQueue()
        dispatcher = self.dispatcher(queue=queue, chain_delay=0)

        await dispatcher.queue_first_batch("u1", "user", 40, "uploads/user/u1/source.mp4", 200.0)

        seen = []
        outcome = None
        while True:
            messages = await queue.receive()
            if not messages:
                break
            payload = messages[0].body
            seen.append((payload["batch_index"], payload["start_scene_index"], payload["end_scene_index"]))
            outcome = await dispatcher.handle_batch_task(payload, self.scenes, "video.mp4", self.frames_dir)
            await queue.complete(messages[0])

        self.assertEqual(seen, [(0, 0, 10), (1, 10, 20), (2, 20, 30), (3, 30, 40)])
        self.assertTrue(outcome.all_done)
        self.assertIsNone(outcome.next_task_id)
        self.assertEqual(len((await self.store.load("u1")).ocr_results), 40)
        self.sink.set_progress.assert_awaited_with("u1", 25, "ocr", "Batch 1/4: processing 10 scenes")

    async def test_last_batch_payload(self):
        dispatcher = self.dispatcher(queue=InProcessBatchQueue())
        batch = dispatcher.plan_batches("u1", 40)[-1]

        payload = dispatcher.batch_payload(batch, "user", 40, "key", 200.0)

        self.assertTrue(payload["is_last_batch"])
        self.assertEqual(payload["type"], "process_batch")
        self.assertIsNone(await dispatcher.queue_next_batch(payload))


if __name__ == "__main__":
    unittest.main()
