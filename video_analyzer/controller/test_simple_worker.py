import asyncio
import unittest
from unittest.mock import AsyncMock

from video_analyzer.batch.batch_dispatcher import TASK_PROCESS_BATCH, BatchTaskOutcome
from video_analyzer.batch.checkpoint_store import MemoryCheckpointStore
from video_analyzer.controller.simple_worker import BATCH_RETRY_DELAY, Worker, report_payload
from video_analyzer.core.exceptions import BatchProcessingError, InvalidJobError
from video_analyzer.services.queue_service import InProcessBatchQueue


def batch_body(**extra):
    return {
        "type": TASK_PROCESS_BATCH,
        "upload_id": "u1",
        "user_id": "user",
        "batch_index": 0,
        "video_path": "uploads/user/u1/source.mp4",
        **extra,
    }


class WorkerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.queue = InProcessBatchQueue()
        self.processor = AsyncMock()
        self.worker = Worker(
            processor=self.processor,
            job_queue=self.queue,
            batch_queue=self.queue,
            checkpoint_store=MemoryCheckpointStore(),
            shutdown=AsyncMock(),
            max_workers=2,
            poll_interval=0.01,
        )

    async def receive(self, body):
        await self.queue.enqueue(body)
        return (await self.queue.receive())[0]


class TestHandleMessage(WorkerTestCase):
    async def test_video_job_completes_message(self):
        message = await self.receive({"upload_id": "u1", "user_id": "user", "blob_key": "k"})

        self.assertTrue(await self.worker.handle_message(self.queue, message))

        self.processor.process.assert_awaited_once()
        self.assertEqual(self.queue.qsize(), 0)

    async def test_invalid_job_is_dropped(self):
        self.processor.process.side_effect = InvalidJobError("missing required fields: blob_key")
        message = await self.receive({"upload_id": "u1"})

        self.assertFalse(await self.worker.handle_message(self.queue, message))
        self.assertEqual(self.queue.qsize(), 0)

    async def test_failed_batch_is_retried_later(self):
        self.processor.process_batch_task.side_effect = RuntimeError("provider outage")
        abandon = AsyncMock()
        self.queue.abandon = abandon
        message = await self.receive(batch_body())

        self.assertFalse(await self.worker.handle_message(self.queue, message))
        abandon.assert_awaited_once_with(message, delay=BATCH_RETRY_DELAY)

    async def test_permanent_batch_failure_is_dropped(self):
        self.processor.process_batch_task.side_effect = BatchProcessingError("Batch 1/2 failed after 3 retries", 0)
        message = await self.receive(batch_body())

        self.assertFalse(await self.worker.handle_message(self.queue, message))
        self.assertEqual(self.queue.qsize(), 0)

    async def test_last_batch_runs_report(self):
        self.processor.process_batch_task.return_value = BatchTaskOutcome(result=None, all_done=True)
        message = await self.receive(batch_body(is_last_batch=True))

        self.assertTrue(await self.worker.handle_message(self.queue, message))

        payload = self.processor.process.await_args.args[0]
        self.assertTrue(payload["ocr_batches_done"])
        self.assertEqual(payload["blob_key"], "uploads/user/u1/source.mp4")

    def test_report_payload(self):
        payload = report_payload(batch_body())
        self.assertEqual(payload["type"], "process_video")
        self.assertEqual(payload["user_id"], "user")


class TestPolling(WorkerTestCase):
    async def test_duplicate_upload_is_postponed(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_process(body):
            started.set()
            await release.wait()

        self.processor.process.side_effect = slow_process
        await self.queue.enqueue({"upload_id": "u1", "user_id": "user", "blob_key": "k"})
        await self.worker.poll_once()
        await started.wait()

        await self.queue.enqueue({"upload_id": "u1", "user_id": "user", "blob_key": "k"})
        await self.worker.poll_once()

        self.assertEqual(self.worker.active_count(), 1)
        release.set()
        await asyncio.gather(*(info["task"] for info in self.worker.active.values()))
        self.assertEqual(self.processor.process.await_count, 1)

    async def test_sweep_runs_once_per_interval(self):
        self.worker.checkpoint_store = AsyncMock()
        self.worker.checkpoint_store.sweep_expired.return_value = 0

        await self.worker.maybe_sweep()
        await self.worker.maybe_sweep()

        self.worker.checkpoint_store.sweep_expired.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
