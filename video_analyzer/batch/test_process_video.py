import io
import os
import asyncio
import shutil
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from openpyxl import load_workbook
from PIL import Image

from video_analyzer.batch.batch_dispatcher import BatchDispatcher
from video_analyzer.batch.checkpoint_store import MemoryCheckpointStore
from video_analyzer.batch.ffmpeg_runner import VideoMetadata
from video_analyzer.batch.ocr_router import OcrRouter
from video_analyzer.batch.process_video import GracefulShutdown, VideoJob, VideoProcessor
from video_analyzer.batch.providers.base import CapabilityProvider, ProviderResult
from video_analyzer.batch.rate_limiter import RateLimiter
from video_analyzer.batch.scene_detection import SceneDetector, scene_frame_path
from video_analyzer.batch.transcription_pipeline import TranscriptionResult
from video_analyzer.core.exceptions import BlobNotFoundError, InvalidJobError, SubprocessError
from video_analyzer.models.checkpoint import ProcessingStep, SceneCut, TranscriptionSegment
from video_analyzer.services.queue_service import InProcessBatchQueue
from video_analyzer.services.status_service import StatusSink
from video_analyzer.services.storage_service import LocalObjectStorage, audio_key, report_key

SOURCE_KEY = "uploads/user/u1/source.mp4"
CUTS = [SceneCut(timestamp=t, confidence=0.05) for t in (0.0, 10.0, 20.0)]


class CountingOcr(CapabilityProvider):
    def __init__(self):
        super().__init__("fake-ocr", limiter=RateLimiter("fake-ocr", max_concurrent=10, requests_per_window=1000))
        self.calls = 0

    async def _call(self, image):
        self.calls += 1
        return ProviderResult(text=f"text {self.calls}", confidence=0.9)


class FakeTranscription:
    def __init__(self, store):
        self.store = store
        self.run = AsyncMock(side_effect=self._run)

    async def _run(self, audio_path, work_dir, upload_id, duration, checkpoint):
        assert os.path.exists(audio_path)
        seg = TranscriptionSegment(timestamp=2.0, duration=2.0, text="hello there", confidence=0.9)
        await self.store.add_completed_audio_chunks(upload_id, [0], [seg])
        return TranscriptionResult(segments=[seg], total_duration=duration, chunks_total=1, chunks_transcribed=1)


async def fake_frame(video_path, scene, frames_dir):
    path = scene_frame_path(frames_dir, scene)
    os.makedirs(frames_dir, exist_ok=True)
    Image.new("RGB", (64, 36), "white").save(path)
    return path


async def fake_extract(video_path, out_path):
    with open(out_path, "wb") as f:
        f.write(b"ID3fake-audio")
    return out_path


async def fake_preprocess(in_path, out_path):
    shutil.copyfile(in_path, out_path)
    return out_path


class ProcessorTestCase(unittest.IsolatedAsyncioTestCase):
    batch_mode = "inline"

    async def asyncSetUp(self):
        self.tmp = tempfile.mkdtemp()
        self.storage = LocalObjectStorage(os.path.join(self.tmp, "blobs"))
        await self.storage.put(SOURCE_KEY, b"\x00" * 4096)

        self.store = MemoryCheckpointStore(storage=self.storage)
        self.sink = AsyncMock(spec=StatusSink)
        self.detector = SceneDetector()
        self.detector.detect_cuts = AsyncMock(return_value=list(CUTS))
        self.transcription = FakeTranscription(self.store)
        self.ocr = CountingOcr()
        self.queue = InProcessBatchQueue()
        self.dispatcher = BatchDispatcher(
            self.store,
            OcrRouter([self.ocr]),
            frame_extractor=fake_frame,
            queue=self.queue,
            status_sink=self.sink,
            batch_size=2,
            chain_delay=0,
        )
        self.processor = VideoProcessor(
            checkpoint_store=self.store,
            storage=self.storage,
            status_sink=self.sink,
            scene_detector=self.detector,
            transcription=self.transcription,
            dispatcher=self.dispatcher,
            work_root=os.path.join(self.tmp, "work"),
            batch_mode=self.batch_mode,
        )

        meta = VideoMetadata(duration=30.0, width=1280, height=720, has_video=True, has_audio=True)
        patches = [
            patch("video_analyzer.batch.process_video.probe_video", AsyncMock(return_value=meta)),
            patch("video_analyzer.batch.process_video.extract_audio", AsyncMock(side_effect=fake_extract)),
            patch("video_analyzer.batch.process_video.preprocess_audio", AsyncMock(side_effect=fake_preprocess)),
        ]
        self.mocks = [p.start() for p in patches]
        for p in patches:
            self.addCleanup(p.stop)

    async def asyncTearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def job(self, **extra):
        return {"upload_id": "u1", "user_id": "user", "blob_key": SOURCE_KEY, **extra}

    async def assert_gone(self, key):
        with self.assertRaises(BlobNotFoundError):
            await self.storage.head(key)


class TestVideoJob(unittest.TestCase):
    def test_missing_fields(self):
        with self.assertRaises(InvalidJobError) as ctx:
            VideoJob.parse({"upload_id": "u1", "user_id": "user"})
        self.assertIn("blob_key", str(ctx.exception))

    def test_defaults(self):
        job = VideoJob.parse({"upload_id": "u1", "user_id": "user", "blob_key": "k", "type": "process_video"})
        self.assertFalse(job.ocr_batches_done)
        self.assertIsNone(job.file_name)


class TestInlineProcessing(ProcessorTestCase):
    async def test_full_run(self):
        result = await self.processor.process(self.job())

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.total_scenes, 3)
        self.assertEqual(result.ocr_scenes, 3)
        self.assertEqual(result.segments, 1)
        self.assertEqual(result.result_key, report_key("user", "u1"))
        self.transcription.run.assert_awaited_once()
        self.sink.mark_completed.assert_awaited_once_with("u1", report_key("user", "u1"))
        self.assertEqual(self.sink.set_progress.await_args.args[1:3], (100, "completed"))

        # source, audio and checkpoint are cleaned up
        await self.assert_gone(SOURCE_KEY)
        await self.assert_gone(audio_key("user", "u1"))
        self.assertIsNone(await self.store.load("u1"))
        self.assertFalse(os.path.exists(os.path.join(self.tmp, "work", "u1")))

        data = await self.storage.get(report_key("user", "u1"))
        wb = load_workbook(io.BytesIO(data))
        self.assertEqual(wb.sheetnames, ["Scenes", "Summary"])
        scenes = wb["Scenes"]
        self.assertEqual(scenes.max_row, 4)
        self.assertEqual(scenes["B2"].value, "00:00:00")
        self.assertTrue(scenes["D2"].value.startswith("text "))
        self.assertEqual(scenes["E2"].value, "hello there")
        self.assertEqual(scenes["E3"].value, "(no narration)")

    async def test_resume_at_scene_detection(self):
        await self.storage.put(audio_key("user", "u1"), b"ID3fake-audio")
        await self.store.get_or_create("u1", "user")
        await self.store.update(
            "u1",
            current_step=ProcessingStep.SCENE_DETECTION,
            video_path=SOURCE_KEY,
            audio_path=audio_key("user", "u1"),
            video_duration=30.0,
            ocr_results={0: "cached text"},
        )

        result = await self.processor.process(self.job())

        self.assertEqual(result.status, "completed")
        self.transcription.run.assert_not_awaited()
        self.mocks[1].assert_not_awaited()
        self.detector.detect_cuts.assert_awaited_once()
        self.assertEqual(self.ocr.calls, 2)

    async def test_reuses_cached_scene_cuts(self):
        await self.store.get_or_create("u1", "user")
        await self.store.update(
            "u1",
            current_step=ProcessingStep.SCENE_DETECTION,
            video_path=SOURCE_KEY,
            video_duration=30.0,
            scene_cuts=list(CUTS),
        )

        await self.processor.process(self.job())

        self.detector.detect_cuts.assert_not_awaited()
        self.assertEqual(self.ocr.calls, 3)

    async def test_scene_detection_failure_fails_the_job(self):
        self.detector.detect_cuts.side_effect = SubprocessError("scene detection failed (exit 1)", 1)

        with self.assertRaises(SubprocessError):
            await self.processor.process(self.job())

        self.sink.mark_failed.assert_awaited_once_with("u1", "Video processing failed. Please try again.")
        await self.assert_gone(SOURCE_KEY)

    async def test_transcription_failure_keeps_ocr_report(self):
        self.transcription.run.side_effect = RuntimeError("whisper crashed")

        result = await self.processor.process(self.job())

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.segments, 0)
        self.assertTrue(any("Transcription failed" in w for w in result.warnings))

    async def test_missing_audio_blob_keeps_ocr_report(self):
        await self.store.get_or_create("u1", "user")
        await self.store.update(
            "u1",
            current_step=ProcessingStep.TRANSCRIPTION,
            video_path=SOURCE_KEY,
            audio_path=audio_key("user", "u1"),
            video_duration=30.0,
        )

        result = await self.processor.process(self.job())

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.segments, 0)
        self.assertTrue(any("Transcription failed" in w for w in result.warnings))
        self.transcription.run.assert_not_awaited()
        self.sink.mark_failed.assert_not_awaited()

    async def test_interrupted_run_keeps_source_and_checkpoint(self):
        self.detector.detect_cuts.side_effect = asyncio.CancelledError()

        with self.assertRaises(asyncio.CancelledError):
            await self.processor.process(self.job())

        self.assertGreater(await self.storage.head(SOURCE_KEY), 0)
        self.assertIsNotNone(await self.store.load("u1"))
        self.sink.mark_failed.assert_not_awaited()

    async def test_invalid_payload(self):
        with self.assertRaises(InvalidJobError):
            await self.processor.process({"upload_id": "u1"})


class TestQueuedProcessing(ProcessorTestCase):
    batch_mode = "queue"

    async def test_ocr_handed_to_batch_queue(self):
        first = await self.processor.process(self.job())

        self.assertEqual(first.status, "queued")
        self.assertGreater(await self.storage.head(SOURCE_KEY), 0)
        self.assertEqual(self.queue.qsize(), 1)

        outcome = None
        while True:
            messages = await self.queue.receive()
            if not messages:
                break
            outcome = await self.processor.process_batch_task(messages[0].body)
            await self.queue.complete(messages[0])
        self.assertTrue(outcome.all_done)
        self.assertEqual(self.ocr.calls, 3)

        final = await self.processor.process(self.job(ocr_batches_done=True))

        self.assertEqual(final.status, "completed")
        self.assertEqual(final.ocr_scenes, 3)
        self.assertEqual(self.ocr.calls, 3)
        self.transcription.run.assert_awaited_once()
        await self.assert_gone(SOURCE_KEY)


class TestGracefulShutdown(unittest.IsolatedAsyncioTestCase):
    async def test_flush_saves_pending_work(self):
        store = MemoryCheckpointStore()
        await store.get_or_create("u1", "user")
        shutdown = GracefulShutdown(store, flush_timeout=5)
        shutdown.register_job("u1")
        shutdown.record_pending_ocr("u1", {3: "late text"})
        seg = TranscriptionSegment(timestamp=1.0, duration=1.0, text="hi")
        shutdown.record_pending_transcription("u1", 0, [seg])
        self.assertEqual(shutdown.pending_counts("u1"), (1, 1))

        shutdown.request("SIGTERM")
        await shutdown.wait()

        cp = await store.load("u1")
        self.assertEqual(cp.ocr_results, {3: "late text"})
        self.assertEqual(cp.completed_audio_chunks, {0})
        self.assertEqual(cp.retry_count, 1)
        self.assertEqual(shutdown.pending_counts("u1"), (0, 0))

    async def test_cleared_work_is_not_flushed(self):
        store = MemoryCheckpointStore()
        await store.get_or_create("u1", "user")
        shutdown = GracefulShutdown(store)
        shutdown.record_pending_ocr("u1", {1: "a", 2: "b"})
        shutdown.clear_pending_ocr("u1", [1, 2])

        await shutdown.flush()

        cp = await store.load("u1")
        self.assertEqual(cp.ocr_results, {})
        self.assertEqual(cp.retry_count, 1)

    async def test_missing_checkpoint_is_ignored(self):
        shutdown = GracefulShutdown(MemoryCheckpointStore())
        shutdown.register_job("gone")
        shutdown.record_pending_ocr("gone", {0: "x"})

        await shutdown.flush()

        self.assertEqual(shutdown.pending_counts("gone"), (0, 0))


if __name__ == "__main__":
    unittest.main()
