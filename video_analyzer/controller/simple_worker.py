#!/usr/bin/env python3
"""Queue worker: polls the job queue and the OCR batch queue and runs messages on the VideoProcessor.
Messages are deleted only once handled; an interrupted job's message reappears after the visibility timeout."""
import os
import sys
import time
import fcntl
import asyncio
import argparse
from contextlib import suppress
from pathlib import Path
from typing import Dict, Optional

from video_analyzer.batch.batch_dispatcher import TASK_PROCESS_BATCH
from video_analyzer.controller.queue_reader import abandon_safe, complete_safe, get_next_messages, renew_safe
from video_analyzer.core.config import configs
from video_analyzer.core.container import Container
from video_analyzer.core.exceptions import BatchProcessingError, CheckpointNotFoundError, InvalidJobError
from video_analyzer.core.logger import setup_logging
from video_analyzer.services.queue_service import BatchQueue, QueueMessage

TASK_PROCESS_VIDEO = "process_video"

# A failed (non-permanent) batch is offered again after this delay
BATCH_RETRY_DELAY = 30

LOCK_FILE = "/tmp/video_analyzer_worker.lock"


def report_payload(batch_payload: dict) -> dict:
    """Job payload that resumes an upload after its last OCR batch."""
    return {
        "type": TASK_PROCESS_VIDEO,
        "upload_id": batch_payload["upload_id"],
        "user_id": batch_payload["user_id"],
        "blob_key": batch_payload["video_path"],
        "ocr_batches_done": True,
    }


class Worker:
    def __init__(
        self,
        processor,
        job_queue: BatchQueue,
        batch_queue: BatchQueue,
        checkpoint_store,
        shutdown,
        max_workers: int = 1,
        poll_interval: float = 5,
        visibility_timeout: int = 4 * 60 * 60,
        renew_interval: float = 30 * 60,
        sweep_interval: float = 60 * 60,
    ):
        self.processor = processor
        self.job_queue = job_queue
        self.batch_queue = batch_queue
        self.checkpoint_store = checkpoint_store
        self.shutdown = shutdown
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self.renew_interval = renew_interval
        self.sweep_interval = sweep_interval

        # upload_id -> {"task", "queue", "message"}
        self.active: Dict[str, dict] = {}
        self._last_sweep = 0.0

    def active_count(self) -> int:
        done = [k for k, v in self.active.items() if v["task"].done()]
        for k in done:
            self.active.pop(k, None)
        return len(self.active)

    # =========================
    # MESSAGE HANDLING
    # =========================

    async def handle_message(self, queue: BatchQueue, message: QueueMessage) -> bool:
        body = message.body
        kind = body.get("type", TASK_PROCESS_VIDEO)
        upload_id = body.get("upload_id", "unknown")

        try:
            if kind == TASK_PROCESS_BATCH:
                outcome = await self.processor.process_batch_task(body)
            else:
                await self.processor.process(body)
                outcome = None
        except asyncio.CancelledError:
            print(f"[worker] {upload_id} interrupted, message will reappear after visibility timeout")
            raise
        except (InvalidJobError, BatchProcessingError, CheckpointNotFoundError) as e:
            print(f"[worker] Dropping message {message.id} ({upload_id}): {e}")
            await complete_safe(queue, message)
            return False
        except Exception as e:
            if kind == TASK_PROCESS_BATCH:
                print(f"[worker] Batch for {upload_id} failed, retrying in {BATCH_RETRY_DELAY}s: {e}")
                await abandon_safe(queue, message, delay=BATCH_RETRY_DELAY)
            else:
                # status is already marked failed and the source is gone, a redelivery cannot succeed
                print(f"[worker] Job {upload_id} failed: {e}")
                await complete_safe(queue, message)
            return False

        if outcome is not None and outcome.all_done:
            print(f"[worker] All OCR batches done for {upload_id}, generating report")
            await complete_safe(queue, message)
            try:
                await self.processor.process(report_payload(body))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                print(f"[worker] Report for {upload_id} failed: {e}")
                return False
            return True

        await complete_safe(queue, message)
        return True

    def _start(self, queue: BatchQueue, message: QueueMessage):
        upload_id = message.body.get("upload_id", message.id)
        task = asyncio.create_task(self.handle_message(queue, message))
        self.active[upload_id] = {"task": task, "queue": queue, "message": message}

    async def poll_once(self):
        queues = [self.batch_queue]
        if self.job_queue is not self.batch_queue:
            queues.append(self.job_queue)

        for queue in queues:
            free = self.max_workers - self.active_count()
            if free <= 0:
                return
            for message in await get_next_messages(queue, free, self.visibility_timeout):
                upload_id = message.body.get("upload_id", message.id)
                if upload_id in self.active and not self.active[upload_id]["task"].done():
                    print(f"[worker] {upload_id} already in progress, postponing message {message.id}")
                    await abandon_safe(queue, message, delay=self.poll_interval)
                    continue
                print(f"[worker] Received {message.body.get('type', TASK_PROCESS_VIDEO)} for {upload_id} "
                      f"(active: {self.active_count() + 1}/{self.max_workers})")
                self._start(queue, message)

    # =========================
    # BACKGROUND
    # =========================

    async def _renewal_loop(self):
        while True:
            await asyncio.sleep(self.renew_interval)
            for info in list(self.active.values()):
                if not info["task"].done():
                    await renew_safe(info["queue"], info["message"], self.visibility_timeout)

    async def maybe_sweep(self):
        now = time.monotonic()
        if self._last_sweep and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        try:
            swept = await self.checkpoint_store.sweep_expired()
        except Exception as e:
            print(f"[worker][sweep] Checkpoint sweep error: {e}")
            return
        if swept:
            print(f"[worker][sweep] Removed {swept} expired checkpoints")

    async def run(self):
        self.shutdown.install()
        stop = asyncio.create_task(self.shutdown.wait())
        renewal = asyncio.create_task(self._renewal_loop())

        try:
            while not self.shutdown.requested:
                try:
                    await self.maybe_sweep()
                    await self.poll_once()
                except Exception as e:
                    print(f"[worker] Unexpected error: {e}")
                await asyncio.wait({stop}, timeout=self.poll_interval)
        finally:
            renewal.cancel()
            with suppress(asyncio.CancelledError):
                await renewal
            if self.shutdown.requested:
                # flush first: it needs the in-flight pending results
                await stop
            tasks = [info["task"] for info in self.active.values() if not info["task"].done()]
            print(f"[worker] Stopping {len(tasks)} active jobs...")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if not stop.done():
                stop.cancel()
            print("[worker] Worker shut down.")


def acquire_lock(path: str = LOCK_FILE):
    """Acquire a file lock to prevent multiple worker instances."""
    fp = open(Path(path), "w")
    try:
        fcntl.flock(fp, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fp.write(str(os.getpid()))
        fp.flush()
        return fp
    except IOError:
        print("[worker] Another worker instance is already running. Exiting.")
        sys.exit(1)


async def main(container: Container, single_job: Optional[dict] = None):
    settings = container.settings()
    processor = container.processor()
    try:
        if single_job is not None:
            container.shutdown().install()
            await processor.process(single_job)
            return

        worker = Worker(
            processor=processor,
            job_queue=container.job_queue(),
            batch_queue=container.batch_queue(),
            checkpoint_store=container.checkpoint_store(),
            shutdown=container.shutdown(),
            max_workers=settings.WORKER_MAX_CONCURRENT,
            poll_interval=settings.QUEUE_POLL_INTERVAL,
            visibility_timeout=settings.QUEUE_VISIBILITY_TIMEOUT,
            renew_interval=settings.QUEUE_VISIBILITY_RENEW_INTERVAL,
            sweep_interval=settings.CHECKPOINT_SWEEP_INTERVAL,
        )
        print(f"[worker] Starting queue worker (max_concurrent={settings.WORKER_MAX_CONCURRENT}, "
              f"queue={settings.QUEUE_BACKEND}, ocr_batch_mode={settings.OCR_BATCH_MODE})")
        print(f"[worker] Visibility timeout: {settings.QUEUE_VISIBILITY_TIMEOUT}s "
              f"({settings.QUEUE_VISIBILITY_TIMEOUT // 3600}h)")
        await worker.run()
    finally:
        if "database" in (settings.CHECKPOINT_BACKEND, settings.STATUS_BACKEND):
            await container.db().dispose()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Video analysis worker")
    parser.add_argument("--upload-id", help="process one upload and exit instead of polling")
    parser.add_argument("--user-id")
    parser.add_argument("--blob-key")
    return parser.parse_args(argv)


def run(argv=None):
    args = parse_args(argv)
    setup_logging(configs.LOG_DIR, configs.LOG_LEVEL)

    single_job = None
    if args.upload_id:
        single_job = {"upload_id": args.upload_id, "user_id": args.user_id, "blob_key": args.blob_key}
        lock_fp = None
    else:
        lock_fp = acquire_lock()

    try:
        asyncio.run(main(Container(), single_job))
    finally:
        if lock_fp is not None:
            lock_fp.close()


if __name__ == "__main__":
    run()
