# process_video.py
"""
Resumable video analysis for one upload.

    downloading → audio_extraction → transcription ┐
                                   scene_detection ┘ (concurrent) → ocr → excel_generation

The checkpoint decides where a run starts: a step runs only when
index(current_step) <= index(step). Transcription failing leaves an OCR-only
report; scene detection failing fails the job.

Cleanup always runs: the job temp dir is removed and the uploaded source is
deleted, except when the run was interrupted (the next run needs the source)
or OCR was handed to the batch queue.
"""
import os
import shutil
import signal
import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from video_analyzer.batch.batch_dispatcher import BatchDispatcher, BatchTaskOutcome
from video_analyzer.batch.checkpoint_store import CheckpointStore, should_run_step
from video_analyzer.batch.ffmpeg_runner import VideoMetadata, extract_audio, preprocess_audio, probe_video
from video_analyzer.batch.report_pipeline import ReportSummary, WarningCollector, build_rows, generate_report
from video_analyzer.batch.scene_detection import SceneDetector, scene_frame_path
from video_analyzer.batch.transcription_pipeline import TranscriptionPipeline, TranscriptionResult
from video_analyzer.core.exceptions import (
    BatchProcessingError,
    CheckpointNotFoundError,
    InvalidJobError,
    SubprocessError,
    user_message,
)
from video_analyzer.core.logger import log_critical_error
from video_analyzer.models.checkpoint import ProcessingCheckpoint, ProcessingStep, Scene, TranscriptionSegment
from video_analyzer.services.progress_reporter import ProgressReporter
from video_analyzer.services.status_service import StatusSink, calculate_progress, get_status_message
from video_analyzer.services.storage_service import ObjectStorage, audio_key, report_key

logger = logging.getLogger("process_video")

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class VideoJob(BaseModel):
    upload_id: str
    user_id: str
    blob_key: str
    file_name: Optional[str] = None
    ocr_batches_done: bool = False

    @classmethod
    def parse(cls, payload: dict) -> "VideoJob":
        missing = [k for k in ("upload_id", "user_id", "blob_key") if not payload.get(k)]
        if missing:
            raise InvalidJobError(f"missing required fields: {', '.join(missing)}")
        try:
            return cls(**payload)
        except ValidationError as e:
            raise InvalidJobError(str(e)) from e


@dataclass
class JobResult:
    upload_id: str
    status: str
    result_key: Optional[str] = None
    total_scenes: int = 0
    ocr_scenes: int = 0
    segments: int = 0
    warnings: List[str] = field(default_factory=list)


class GracefulShutdown:
    """
    SIGTERM / SIGINT handling. Pipelines record work that is done but not yet
    checkpointed; on a signal it is flushed and every active checkpoint is
    saved with retry_count + 1, within `flush_timeout` seconds.
    """

    def __init__(self, checkpoint_store: CheckpointStore, flush_timeout: float = 20.0):
        self.checkpoint_store = checkpoint_store
        self.flush_timeout = flush_timeout
        self.requested = False
        self.active_jobs: set = set()
        self._pending_ocr: Dict[str, Dict[int, str]] = {}
        self._pending_transcription: Dict[str, Dict[int, List[TranscriptionSegment]]] = {}
        self._event: Optional[asyncio.Event] = None
        self._flush_task: Optional[asyncio.Task] = None

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        loop = loop or asyncio.get_running_loop()
        self._event = asyncio.Event()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request, sig)

    def request(self, sig=None):
        if self.requested:
            return
        self.requested = True
        logger.warning("[SHUTDOWN] Received signal %s, flushing %d active jobs", sig, len(self.active_jobs))
        if self._event is None:
            self._event = asyncio.Event()
        self._event.set()
        self._flush_task = asyncio.ensure_future(self.flush())

    async def wait(self):
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
        if self._flush_task is not None:
            await self._flush_task

    def register_job(self, upload_id: str):
        self.active_jobs.add(upload_id)

    def unregister_job(self, upload_id: str):
        self.active_jobs.discard(upload_id)
        self._pending_ocr.pop(upload_id, None)
        self._pending_transcription.pop(upload_id, None)

    def record_pending_ocr(self, upload_id: str, results: Dict[int, str]):
        self._pending_ocr.setdefault(upload_id, {}).update(results)

    def clear_pending_ocr(self, upload_id: str, indices: Iterable[int]):
        pending = self._pending_ocr.get(upload_id, {})
        for index in indices:
            pending.pop(index, None)

    def record_pending_transcription(self, upload_id: str, chunk_index: int, segments: List[TranscriptionSegment]):
        self._pending_transcription.setdefault(upload_id, {})[chunk_index] = list(segments)

    def clear_pending_transcription(self, upload_id: str, chunk_indices: Iterable[int]):
        pending = self._pending_transcription.get(upload_id, {})
        for index in chunk_indices:
            pending.pop(index, None)

    def pending_counts(self, upload_id: str) -> tuple:
        return len(self._pending_transcription.get(upload_id, {})), len(self._pending_ocr.get(upload_id, {}))

    async def _flush_job(self, upload_id: str):
        chunks = self._pending_transcription.pop(upload_id, {})
        if chunks:
            segments = [s for segs in chunks.values() for s in segs]
            await self.checkpoint_store.add_completed_audio_chunks(upload_id, chunks.keys(), segments)
        ocr = self._pending_ocr.pop(upload_id, {})
        if ocr:
            await self.checkpoint_store.add_completed_ocr_scenes(upload_id, ocr)

        checkpoint = await self.checkpoint_store.load(upload_id)
        if checkpoint is not None:
            await self.checkpoint_store.save(checkpoint, increment_retry=True)
        logger.info(
            "[SHUTDOWN] %s flushed (%d chunks, %d OCR results), retry_count marked",
            upload_id, len(chunks), len(ocr),
        )

    async def flush(self):
        upload_ids = set(self.active_jobs) | set(self._pending_ocr) | set(self._pending_transcription)

        async def flush_all():
            for upload_id in upload_ids:
                try:
                    await self._flush_job(upload_id)
                except CheckpointNotFoundError:
                    logger.info("[SHUTDOWN] %s has no checkpoint, nothing to flush", upload_id)

        try:
            await asyncio.wait_for(flush_all(), timeout=self.flush_timeout)
        except asyncio.TimeoutError:
            logger.error("[SHUTDOWN] Flush did not finish within %.0fs", self.flush_timeout)


class VideoProcessor:
    def __init__(
        self,
        checkpoint_store: CheckpointStore,
        storage: ObjectStorage,
        status_sink: StatusSink,
        scene_detector: SceneDetector,
        transcription: TranscriptionPipeline,
        dispatcher: BatchDispatcher,
        work_root: str = "/tmp/video-analyzer",
        batch_mode: str = "inline",
        heartbeat_interval: float = 60.0,
        progress_threshold: int = 5,
        narration_min_confidence: float = 0.3,
        audio_preprocess: bool = True,
        download_chunk_size: int = 10 * 1024 * 1024,
        download_concurrency: int = 4,
        shutdown: Optional[GracefulShutdown] = None,
    ):
        self.checkpoint_store = checkpoint_store
        self.storage = storage
        self.status_sink = status_sink
        self.scene_detector = scene_detector
        self.transcription = transcription
        self.dispatcher = dispatcher
        self.work_root = work_root
        self.batch_mode = batch_mode
        self.heartbeat_interval = heartbeat_interval
        self.progress_threshold = progress_threshold
        self.narration_min_confidence = narration_min_confidence
        self.audio_preprocess = audio_preprocess
        self.download_chunk_size = download_chunk_size
        self.download_concurrency = download_concurrency
        self.shutdown = shutdown

    # =========================
    # HELPERS
    # =========================

    async def _heartbeat(self, upload_id: str):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.status_sink.heartbeat(upload_id)

    async def _enter_stage(self, progress: ProgressReporter, stage: ProcessingStep):
        await progress.force_report(calculate_progress(stage.value), stage.value, get_status_message(stage.value))

    async def _download_source(self, job: VideoJob, dest: str) -> VideoMetadata:
        await self.storage.download_file(
            job.blob_key, dest, chunk_size=self.download_chunk_size, concurrency=self.download_concurrency
        )
        return await probe_video(dest)

    async def _extract_audio(self, job: VideoJob, video_path: str, work_dir: str, warnings: WarningCollector) -> str:
        raw = os.path.join(work_dir, "audio_raw.mp3")
        await extract_audio(video_path, raw)
        audio_path = raw
        if self.audio_preprocess:
            filtered = os.path.join(work_dir, "audio.mp3")
            try:
                audio_path = await preprocess_audio(raw, filtered)
            except (SubprocessError, asyncio.TimeoutError) as e:
                warnings.add(f"Audio preprocessing failed, using unfiltered audio: {e}")
                audio_path = raw
        key = audio_key(job.user_id, job.upload_id)
        await self.storage.put_file(key, audio_path, "audio/mpeg")
        return key

    async def _transcribe_safely(
        self,
        job: VideoJob,
        audio_blob: str,
        work_dir: str,
        duration: float,
        checkpoint: ProcessingCheckpoint,
        warnings: WarningCollector,
    ) -> Optional[TranscriptionResult]:
        audio_path = os.path.join(work_dir, "audio_input.mp3")
        try:
            await self.storage.download_file(audio_blob, audio_path)
            result = await self.transcription.run(audio_path, work_dir, job.upload_id, duration, checkpoint)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[PROCESS] %s transcription failed, continuing without narration: %s", job.upload_id, e)
            warnings.add("Transcription failed: the report contains on-screen text only.")
            return None
        await self.checkpoint_store.update(
            job.upload_id, current_step=ProcessingStep.SCENE_DETECTION, total_audio_chunks=result.chunks_total
        )
        warnings.add_if(result.used_fallback, "No speech detected by VAD: the whole audio track was transcribed.")
        warnings.add_if(
            result.chunks_failed > 0,
            f"{result.chunks_failed} of {result.chunks_total} audio chunks could not be transcribed.",
        )
        return result

    async def _ensure_screenshots(self, scenes: List[Scene], video_path: str, frames_dir: str):
        sem = asyncio.Semaphore(self.dispatcher.frame_concurrency)

        async def one(scene: Scene):
            path = scene_frame_path(frames_dir, scene)
            if not os.path.exists(path):
                async with sem:
                    try:
                        path = await self.dispatcher.frame_extractor(video_path, scene, frames_dir)
                    except Exception as e:
                        logger.warning("[PROCESS] No screenshot for scene %d: %s", scene.scene_number, e)
                        return
            scene.screenshot_path = path

        await asyncio.gather(*(one(s) for s in scenes))

    # =========================
    # MAIN FLOW
    # =========================

    async def process(self, payload: dict) -> JobResult:
        job = VideoJob.parse(payload)
        upload_id = job.upload_id
        progress = ProgressReporter(self.status_sink, upload_id, self.progress_threshold)
        warnings = WarningCollector()
        work_dir = os.path.join(self.work_root, upload_id)
        frames_dir = os.path.join(work_dir, "frames")
        os.makedirs(frames_dir, exist_ok=True)

        heartbeat = asyncio.create_task(self._heartbeat(upload_id))
        if self.shutdown is not None:
            self.shutdown.register_job(upload_id)

        handed_off = False
        interrupted = False
        step = ProcessingStep.DOWNLOADING
        try:
            checkpoint = await self.checkpoint_store.get_or_create(upload_id, job.user_id)
            step = checkpoint.current_step
            logger.info(
                "[PROCESS] %s starting at step=%s (retry_count=%d, ocr cached=%d, chunks cached=%d)",
                upload_id, step.value, checkpoint.retry_count,
                len(checkpoint.ocr_results), len(checkpoint.completed_audio_chunks),
            )

            # ---- downloading (every run: the temp dir does not survive a restart) ----
            if should_run_step(step, ProcessingStep.DOWNLOADING):
                await self._enter_stage(progress, ProcessingStep.DOWNLOADING)
            ext = os.path.splitext(job.file_name or job.blob_key)[1] or ".mp4"
            video_path = os.path.join(work_dir, f"source{ext}")
            meta = await self._download_source(job, video_path)
            if should_run_step(step, ProcessingStep.DOWNLOADING):
                checkpoint = await self.checkpoint_store.update(
                    upload_id,
                    current_step=ProcessingStep.AUDIO_EXTRACTION,
                    video_path=job.blob_key,
                    video_duration=meta.duration,
                )
                step = checkpoint.current_step
            duration = checkpoint.video_duration or meta.duration

            # ---- audio extraction ----
            if should_run_step(step, ProcessingStep.AUDIO_EXTRACTION):
                await self._enter_stage(progress, ProcessingStep.AUDIO_EXTRACTION)
                key = None
                if meta.has_audio:
                    key = await self._extract_audio(job, video_path, work_dir, warnings)
                else:
                    warnings.add("The video has no audio track: narration is empty.")
                checkpoint = await self.checkpoint_store.update(
                    upload_id, current_step=ProcessingStep.TRANSCRIPTION, audio_path=key
                )
                step = checkpoint.current_step

            # ---- transcription + scene detection ----
            transcript: Optional[TranscriptionResult] = None
            if should_run_step(step, ProcessingStep.SCENE_DETECTION):
                await self._enter_stage(progress, step)
                transcript, cuts = await self._run_analysis(job, checkpoint, step, video_path, work_dir, duration, warnings)
                checkpoint = await self.checkpoint_store.update(
                    upload_id,
                    current_step=ProcessingStep.OCR,
                    scene_cuts=cuts,
                    total_scenes=len(self.scene_detector.build_scenes(cuts, duration)),
                )
                step = checkpoint.current_step

            scenes = self.scene_detector.build_scenes(checkpoint.scene_cuts, duration)

            # ---- OCR ----
            if should_run_step(step, ProcessingStep.OCR) and not job.ocr_batches_done:
                await self._enter_stage(progress, ProcessingStep.OCR)
                if self.batch_mode == "queue":
                    remaining = [s for s in scenes if s.index not in checkpoint.ocr_results]
                    if remaining:
                        await self.dispatcher.queue_first_batch(
                            upload_id, job.user_id, len(scenes), job.blob_key, duration
                        )
                        handed_off = True
                        logger.info("[PROCESS] %s OCR handed to batch queue (%d scenes)", upload_id, len(scenes))
                        return JobResult(upload_id=upload_id, status="queued", total_scenes=len(scenes))
                else:
                    await self.dispatcher.run_all(upload_id, scenes, video_path, frames_dir, duration, progress)

            if should_run_step(step, ProcessingStep.OCR):
                checkpoint = await self.checkpoint_store.update(upload_id, current_step=ProcessingStep.EXCEL_GENERATION)
                step = checkpoint.current_step

            # ---- report ----
            await self._enter_stage(progress, ProcessingStep.EXCEL_GENERATION)
            checkpoint = await self.checkpoint_store.load(upload_id)
            if checkpoint is None:
                raise CheckpointNotFoundError(f"Checkpoint not found: {upload_id}")
            missing = len(scenes) - sum(1 for s in scenes if s.index in checkpoint.ocr_results)
            warnings.add_if(missing > 0, f"Text recognition failed for {missing} of {len(scenes)} scenes.")

            result_key = await self._write_report(job, checkpoint, scenes, meta, transcript, video_path, work_dir, warnings)

            await self.status_sink.mark_completed(upload_id, result_key)
            await progress.force_report(100, "completed", get_status_message("completed"))
            await self.checkpoint_store.delete(upload_id)

            logger.info("[PROCESS] %s completed: %d scenes -> %s", upload_id, len(scenes), result_key)
            return JobResult(
                upload_id=upload_id,
                status="completed",
                result_key=result_key,
                total_scenes=len(scenes),
                ocr_scenes=len(checkpoint.ocr_results),
                segments=len(checkpoint.transcription_segments),
                warnings=warnings.warnings,
            )

        except asyncio.CancelledError:
            interrupted = True
            logger.warning("[PROCESS] %s interrupted at step=%s, checkpoint kept for resume", upload_id, step.value)
            raise
        except Exception as e:
            log_critical_error(
                "Video processing failed",
                e,
                upload_id=upload_id,
                user_id=job.user_id,
                step=step.value,
            )
            await self.status_sink.mark_failed(upload_id, user_message(e))
            raise
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            if self.shutdown is not None:
                self.shutdown.unregister_job(upload_id)
            shutil.rmtree(work_dir, ignore_errors=True)
            if not handed_off and not interrupted:
                await self.storage.delete_quietly(job.blob_key)

    async def _run_analysis(self, job, checkpoint, step, video_path, work_dir, duration, warnings):
        """Transcription and scene detection side by side; returns (transcript or None, cuts)."""
        transcript_task = None
        if should_run_step(step, ProcessingStep.TRANSCRIPTION):
            if checkpoint.audio_path:
                transcript_task = asyncio.create_task(
                    self._transcribe_safely(job, checkpoint.audio_path, work_dir, duration, checkpoint, warnings)
                )
            else:
                logger.info("[PROCESS] %s has no audio, skipping transcription", job.upload_id)

        try:
            if checkpoint.scene_cuts:
                cuts = list(checkpoint.scene_cuts)
                logger.info("[PROCESS] %s reusing %d cached scene cuts", job.upload_id, len(cuts))
            else:
                cuts = await self.scene_detector.detect_cuts(video_path)
        except BaseException:
            if transcript_task is not None:
                transcript_task.cancel()
                with suppress(asyncio.CancelledError):
                    await transcript_task
            raise

        transcript = await transcript_task if transcript_task is not None else None
        return transcript, cuts

    async def _write_report(self, job, checkpoint, scenes, meta, transcript, video_path, work_dir, warnings) -> str:
        frames_dir = os.path.join(work_dir, "frames")
        await self._ensure_screenshots(scenes, video_path, frames_dir)

        rows = build_rows(scenes, checkpoint.ocr_results, checkpoint.transcription_segments, self.narration_min_confidence)
        detector = self.scene_detector
        summary = ReportSummary(
            video_duration=checkpoint.video_duration or meta.duration,
            width=meta.width,
            height=meta.height,
            detection={
                "Mode": detector.mode,
                "Thresholds": ", ".join(str(t) for t in detector.thresholds),
                "ROI Regions": ", ".join(detector.roi_regions) or "none",
                "Merge Epsilon (s)": detector.merge_epsilon,
                "Min Scene Interval (s)": detector.min_scene_interval,
                "Min Scene Duration (s)": detector.min_scene_duration,
                "Sample Position": detector.sample_ratio,
            },
            transcription=transcript.stats() if transcript else {"segments": len(checkpoint.transcription_segments)},
            warnings=warnings.warnings,
        )

        out_path = os.path.join(work_dir, "report.xlsx")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, generate_report, rows, summary, out_path)

        key = report_key(job.user_id, job.upload_id)
        await self.storage.put_file(key, out_path, XLSX_CONTENT_TYPE)
        return key

    # =========================
    # QUEUE MODE
    # =========================

    async def process_batch_task(self, payload: dict) -> BatchTaskOutcome:
        """One queued OCR batch: fetch the source, rebuild scenes from the checkpoint, run the batch."""
        upload_id = payload["upload_id"]
        checkpoint = await self.checkpoint_store.load(upload_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"Checkpoint not found: {upload_id}")

        work_dir = os.path.join(self.work_root, f"{upload_id}-batch-{payload['batch_index']}")
        frames_dir = os.path.join(work_dir, "frames")
        os.makedirs(frames_dir, exist_ok=True)
        progress = ProgressReporter(self.status_sink, upload_id, self.progress_threshold)
        try:
            ext = os.path.splitext(payload["video_path"])[1] or ".mp4"
            video_path = os.path.join(work_dir, f"source{ext}")
            await self.storage.download_file(
                payload["video_path"], video_path,
                chunk_size=self.download_chunk_size, concurrency=self.download_concurrency,
            )
            duration = checkpoint.video_duration or payload.get("video_duration") or 0.0
            scenes = self.scene_detector.build_scenes(checkpoint.scene_cuts, duration)
            return await self.dispatcher.handle_batch_task(payload, scenes, video_path, frames_dir, progress)
        except BatchProcessingError as e:
            log_critical_error("OCR batch failed permanently", e, upload_id=upload_id, batch_index=e.batch_index)
            await self.storage.delete_quietly(payload["video_path"])
            await self.checkpoint_store.delete(upload_id)
            raise
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
