# batch_dispatcher.py
"""
OCR in fixed-size scene batches.

For each batch [start, end):
  - skip scenes already in checkpoint.ocr_results
  - grab one frame per remaining scene (bounded concurrency)
  - OcrRouter.process_parallel over the frames
  - write {scene_index: text} to the checkpoint right away

Two dispatch modes:
  inline  run_all() walks the batches in order inside this process
  queue   queue_first_batch() enqueues batch 0; every handled batch enqueues
          the next one, the last reports all_done
"""
import math
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from video_analyzer.batch.checkpoint_store import CheckpointStore
from video_analyzer.batch.ocr_router import OcrRouter
from video_analyzer.batch.scene_detection import extract_scene_frame
from video_analyzer.core.exceptions import BatchProcessingError, CheckpointNotFoundError
from video_analyzer.models.checkpoint import Batch, Scene
from video_analyzer.services.progress_reporter import ProgressReporter
from video_analyzer.services.queue_service import BatchQueue
from video_analyzer.services.status_service import StatusSink

logger = logging.getLogger("batch_dispatcher")

TASK_PROCESS_BATCH = "process_batch"

FrameExtractor = Callable[[str, Scene, str], Awaitable[str]]


def batch_progress(batch_index: int, total_batches: int) -> int:
    """25% at OCR start, 89% at most until the report is written."""
    return min(25 + math.floor((batch_index + 1) / total_batches * 65), 89)


def _read_bytes(path):
    with open(path, "rb") as f:
        return f.read()


@dataclass
class BatchResult:
    batch: Batch
    ocr_results: Dict[int, str] = field(default_factory=dict)
    skipped: int = 0
    failed: int = 0
    stats: dict = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.ocr_results)


@dataclass
class BatchFailure:
    batch_index: int
    total_batches: int
    retry_count: int
    permanent: bool
    message: str


@dataclass
class BatchTaskOutcome:
    result: BatchResult
    all_done: bool
    next_task_id: Optional[str] = None


class BatchDispatcher:
    def __init__(
        self,
        checkpoint_store: CheckpointStore,
        router: OcrRouter,
        frame_extractor: FrameExtractor = extract_scene_frame,
        queue: Optional[BatchQueue] = None,
        status_sink: Optional[StatusSink] = None,
        batch_size: int = 50,
        frame_concurrency: int = 4,
        max_batch_retries: int = 3,
        chain_delay: float = 2.0,
        shutdown=None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.checkpoint_store = checkpoint_store
        self.router = router
        self.frame_extractor = frame_extractor
        self.queue = queue
        self.status_sink = status_sink
        self.batch_size = batch_size
        self.frame_concurrency = frame_concurrency
        self.max_batch_retries = max_batch_retries
        self.chain_delay = chain_delay
        self.shutdown = shutdown

    def plan_batches(self, upload_id: str, total_scenes: int) -> List[Batch]:
        total_batches = math.ceil(total_scenes / self.batch_size)
        return [
            Batch(
                upload_id=upload_id,
                batch_index=i,
                total_batches=total_batches,
                start=i * self.batch_size,
                end=min((i + 1) * self.batch_size, total_scenes),
            )
            for i in range(total_batches)
        ]

    async def _load_frames(self, scenes: Sequence[Scene], video_path: str, frames_dir: str) -> Dict[int, bytes]:
        sem = asyncio.Semaphore(self.frame_concurrency)
        loop = asyncio.get_running_loop()
        frames: Dict[int, bytes] = {}

        async def one(scene: Scene):
            async with sem:
                try:
                    path = await self.frame_extractor(video_path, scene, frames_dir)
                    frames[scene.index] = await loop.run_in_executor(None, _read_bytes, path)
                except Exception as e:
                    logger.warning("[BATCH] Frame for scene %d unavailable: %s", scene.scene_number, e)

        await asyncio.gather(*(one(s) for s in scenes))
        return frames

    async def process_batch(
        self,
        batch: Batch,
        scenes: Sequence[Scene],
        video_path: str,
        frames_dir: str,
        video_duration: Optional[float] = None,
        cached: Optional[Dict[int, str]] = None,
    ) -> BatchResult:
        if cached is None:
            checkpoint = await self.checkpoint_store.load(batch.upload_id)
            if checkpoint is None:
                raise CheckpointNotFoundError(f"Checkpoint not found: {batch.upload_id}")
            cached = checkpoint.ocr_results

        todo = [scenes[i] for i in batch.scene_indices if i not in cached]
        result = BatchResult(batch=batch, skipped=(batch.end - batch.start) - len(todo))
        logger.info(
            "[BATCH] %s batch %d/%d: scenes %d-%d, %d cached, %d to OCR",
            batch.upload_id, batch.batch_index + 1, batch.total_batches,
            batch.start, batch.end - 1, result.skipped, len(todo),
        )
        if not todo:
            return result

        frames = await self._load_frames(todo, video_path, frames_dir)
        indices = sorted(frames)
        ocr_results, stats = await self.router.process_parallel([frames[i] for i in indices], video_duration)
        result.stats = stats

        for index, ocr in zip(indices, ocr_results):
            if ocr.success:
                result.ocr_results[index] = ocr.text
        result.failed = len(todo) - len(result.ocr_results)

        if result.ocr_results:
            if self.shutdown is not None:
                self.shutdown.record_pending_ocr(batch.upload_id, result.ocr_results)
            await self.checkpoint_store.add_completed_ocr_scenes(batch.upload_id, result.ocr_results)
            if self.shutdown is not None:
                self.shutdown.clear_pending_ocr(batch.upload_id, result.ocr_results.keys())

        logger.info(
            "[BATCH] %s batch %d/%d done: %d ok, %d failed",
            batch.upload_id, batch.batch_index + 1, batch.total_batches, result.processed, result.failed,
        )
        return result

    async def mark_batch_failed(self, upload_id: str, batch: Batch, error: BaseException) -> BatchFailure:
        checkpoint = await self.checkpoint_store.load(upload_id)
        retry_count = 1
        if checkpoint is not None:
            await self.checkpoint_store.save(checkpoint, increment_retry=True)
            retry_count = checkpoint.retry_count

        permanent = retry_count >= self.max_batch_retries
        if permanent:
            message = (
                f"Batch {batch.batch_index + 1}/{batch.total_batches} failed after "
                f"{self.max_batch_retries} retries: {error}"
            )
            logger.error("[BATCH] %s %s", upload_id, message)
            if self.status_sink is not None:
                await self.status_sink.mark_failed(upload_id, message)
        else:
            message = f"Batch {batch.batch_index + 1}/{batch.total_batches} failed (retry {retry_count}/{self.max_batch_retries}): {error}"
            logger.warning("[BATCH] %s %s", upload_id, message)

        return BatchFailure(
            batch_index=batch.batch_index,
            total_batches=batch.total_batches,
            retry_count=retry_count,
            permanent=permanent,
            message=message,
        )

    async def _reset_retry_count(self, upload_id: str):
        checkpoint = await self.checkpoint_store.load(upload_id)
        if checkpoint is not None and checkpoint.retry_count:
            checkpoint.retry_count = 0
            await self.checkpoint_store.save(checkpoint)

    async def run_all(
        self,
        upload_id: str,
        scenes: Sequence[Scene],
        video_path: str,
        frames_dir: str,
        video_duration: Optional[float] = None,
        progress: Optional[ProgressReporter] = None,
    ) -> Dict[int, str]:
        """Inline mode: every batch in index order, each retried as a unit until permanent failure."""
        checkpoint = await self.checkpoint_store.load(upload_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"Checkpoint not found: {upload_id}")
        results: Dict[int, str] = dict(checkpoint.ocr_results)

        for batch in self.plan_batches(upload_id, len(scenes)):
            while True:
                try:
                    batch_result = await self.process_batch(
                        batch, scenes, video_path, frames_dir, video_duration, cached=results
                    )
                    break
                except (asyncio.CancelledError, CheckpointNotFoundError):
                    raise
                except Exception as e:
                    failure = await self.mark_batch_failed(upload_id, batch, e)
                    if failure.permanent:
                        raise BatchProcessingError(failure.message, batch.batch_index) from e

            results.update(batch_result.ocr_results)
            if progress is not None:
                await progress.report(
                    batch_progress(batch.batch_index, batch.total_batches),
                    "ocr",
                    f"Batch {batch.batch_index + 1}/{batch.total_batches}",
                )

        await self._reset_retry_count(upload_id)
        return results

    # ---- queue mode ----

    def batch_payload(
        self, batch: Batch, user_id: str, total_scenes: int, video_path: str, video_duration: Optional[float]
    ) -> dict:
        return {
            "type": TASK_PROCESS_BATCH,
            "upload_id": batch.upload_id,
            "user_id": user_id,
            "batch_index": batch.batch_index,
            "total_batches": batch.total_batches,
            "batch_size": self.batch_size,
            "total_scenes": total_scenes,
            "start_scene_index": batch.start,
            "end_scene_index": batch.end,
            "video_path": video_path,
            "video_duration": video_duration,
            "is_last_batch": batch.is_last,
        }

    @staticmethod
    def batch_from_payload(payload: dict) -> Batch:
        return Batch(
            upload_id=payload["upload_id"],
            batch_index=payload["batch_index"],
            total_batches=payload["total_batches"],
            start=payload["start_scene_index"],
            end=payload["end_scene_index"],
        )

    async def queue_first_batch(
        self,
        upload_id: str,
        user_id: str,
        total_scenes: int,
        video_path: str,
        video_duration: Optional[float] = None,
    ) -> str:
        if self.queue is None:
            raise RuntimeError("queue mode requires a BatchQueue")
        batches = self.plan_batches(upload_id, total_scenes)
        if not batches:
            raise ValueError(f"{upload_id}: nothing to queue (0 scenes)")

        task_id = await self.queue.enqueue(self.batch_payload(batches[0], user_id, total_scenes, video_path, video_duration))
        if self.status_sink is not None:
            await self.status_sink.set_progress(
                upload_id, 25, "ocr",
                f"Batch 1/{len(batches)}: processing {batches[0].end - batches[0].start} scenes",
            )
        logger.info("[BATCH] %s queued batch 1/%d (%d scenes total)", upload_id, len(batches), total_scenes)
        return task_id

    async def queue_next_batch(self, payload: dict) -> Optional[str]:
        if payload["is_last_batch"]:
            return None
        next_index = payload["batch_index"] + 1
        start = next_index * payload["batch_size"]
        end = min(start + payload["batch_size"], payload["total_scenes"])
        next_payload = {
            **payload,
            "batch_index": next_index,
            "start_scene_index": start,
            "end_scene_index": end,
            "is_last_batch": next_index == payload["total_batches"] - 1,
        }
        task_id = await self.queue.enqueue(next_payload, delay=self.chain_delay)
        logger.info(
            "[BATCH] %s queued batch %d/%d in %.0fs",
            payload["upload_id"], next_index + 1, payload["total_batches"], self.chain_delay,
        )
        return task_id

    async def handle_batch_task(
        self,
        payload: dict,
        scenes: Sequence[Scene],
        video_path: str,
        frames_dir: str,
        progress: Optional[ProgressReporter] = None,
    ) -> BatchTaskOutcome:
        """
        Process one queued batch and chain the next. Errors propagate after
        mark_batch_failed so the queue redelivers the message; a permanent
        failure raises BatchProcessingError and must not be retried.
        """
        batch = self.batch_from_payload(payload)
        batch = batch.model_copy(update={"end": min(batch.end, len(scenes))})
        try:
            result = await self.process_batch(batch, scenes, video_path, frames_dir, payload.get("video_duration"))
        except (asyncio.CancelledError, CheckpointNotFoundError):
            raise
        except Exception as e:
            failure = await self.mark_batch_failed(batch.upload_id, batch, e)
            if failure.permanent:
                raise BatchProcessingError(failure.message, batch.batch_index) from e
            raise

        await self._reset_retry_count(batch.upload_id)
        if progress is not None:
            await progress.report(
                batch_progress(batch.batch_index, batch.total_batches),
                "ocr",
                f"Batch {batch.batch_index + 1}/{batch.total_batches}",
            )

        next_task_id = await self.queue_next_batch(payload)
        return BatchTaskOutcome(result=result, all_done=next_task_id is None and batch.is_last, next_task_id=next_task_id)
