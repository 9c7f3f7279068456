# transcription_pipeline.py
"""
VAD-gated transcription with chunk-level checkpointing.

    audio → VAD → voiced chunks → ffmpeg cut → provider (≤ concurrency) → segments

Chunks already in checkpoint.completed_audio_chunks are not sent again; their
saved segments are merged back before the final sort. Every
`checkpoint_interval` finished chunks (and at the end) new work is flushed to
the checkpoint store.
"""
import os
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from video_analyzer.batch.checkpoint_store import CheckpointStore
from video_analyzer.batch.ffmpeg_runner import extract_audio_segment, probe_duration
from video_analyzer.batch.providers.base import CapabilityProvider
from video_analyzer.batch.vad import (
    WHISPER_COST_PER_MINUTE,
    AudioChunk,
    PreChunkConfig,
    VadConfig,
    VadResult,
    build_fallback_result,
    run_vad,
)
from video_analyzer.core.exceptions import SubprocessError
from video_analyzer.models.checkpoint import ProcessingCheckpoint, TranscriptionSegment

logger = logging.getLogger("transcription_pipeline")


@dataclass
class TranscriptionResult:
    segments: List[TranscriptionSegment] = field(default_factory=list)
    total_duration: float = 0.0
    voice_duration: float = 0.0
    voice_ratio: float = 0.0
    estimated_savings: float = 0.0
    estimated_cost_usd: float = 0.0
    chunks_total: int = 0
    chunks_transcribed: int = 0
    chunks_cached: int = 0
    chunks_failed: int = 0
    used_fallback: bool = False

    def stats(self) -> dict:
        return {
            "segments": len(self.segments),
            "total_duration": round(self.total_duration, 2),
            "voice_duration": round(self.voice_duration, 2),
            "voice_ratio": round(self.voice_ratio, 4),
            "estimated_savings": round(self.estimated_savings, 1),
            "estimated_cost_usd": round(self.estimated_cost_usd, 4),
            "chunks_total": self.chunks_total,
            "chunks_transcribed": self.chunks_transcribed,
            "chunks_cached": self.chunks_cached,
            "chunks_failed": self.chunks_failed,
            "used_fallback": self.used_fallback,
        }


def _dedupe_sorted(segments: List[TranscriptionSegment]) -> List[TranscriptionSegment]:
    seen = set()
    out = []
    for seg in sorted(segments, key=lambda s: (s.timestamp, s.chunk_index)):
        key = (round(seg.timestamp, 3), seg.chunk_index, seg.text)
        if key in seen:
            continue
        seen.add(key)
        out.append(seg)
    return out


class TranscriptionPipeline:
    def __init__(
        self,
        provider: CapabilityProvider,
        checkpoint_store: Optional[CheckpointStore] = None,
        vad_config: Optional[VadConfig] = None,
        prechunk_config: Optional[PreChunkConfig] = None,
        concurrency: int = 5,
        checkpoint_interval: int = 10,
        fallback_chunk_duration: float = 30.0,
        shutdown=None,
    ):
        self.provider = provider
        self.checkpoint_store = checkpoint_store
        self.vad_config = vad_config or VadConfig()
        self.prechunk_config = prechunk_config or PreChunkConfig()
        self.concurrency = concurrency
        self.checkpoint_interval = checkpoint_interval
        self.fallback_chunk_duration = fallback_chunk_duration
        self.shutdown = shutdown

    async def _detect(self, audio_path, chunks_dir, duration) -> VadResult:
        try:
            vad = await run_vad(audio_path, chunks_dir, duration, self.vad_config, self.prechunk_config)
        except (asyncio.TimeoutError, SubprocessError, OSError, RuntimeError, ValueError) as e:
            logger.warning("[TRANSCRIBE] VAD failed (%s), transcribing the whole track", e)
            return build_fallback_result(duration, chunks_dir, self.fallback_chunk_duration)
        if not vad.chunks and duration > 0:
            return build_fallback_result(duration, chunks_dir, self.fallback_chunk_duration)
        return vad

    async def _transcribe_chunk(self, audio_path: str, chunk: AudioChunk) -> Optional[List[TranscriptionSegment]]:
        """Segments in absolute time, or None when the chunk gave up."""
        try:
            await extract_audio_segment(audio_path, chunk.file_path, chunk.start, chunk.duration)
            result = await self.provider.process(chunk.file_path)
        except FileNotFoundError as e:
            logger.error("[TRANSCRIBE] Chunk %d: file missing, skipping: %s", chunk.chunk_index, e)
            return None
        except Exception as e:
            logger.error("[TRANSCRIBE] Chunk %d failed: %s", chunk.chunk_index, e)
            return None
        finally:
            if os.path.exists(chunk.file_path):
                os.remove(chunk.file_path)

        return [
            TranscriptionSegment(
                timestamp=chunk.start + seg.start,
                duration=max(0.0, seg.end - seg.start),
                text=seg.text,
                confidence=seg.confidence,
                chunk_index=chunk.chunk_index,
            )
            for seg in result.segments
        ]

    async def run(
        self,
        audio_path: str,
        work_dir: str,
        upload_id: Optional[str] = None,
        duration: Optional[float] = None,
        checkpoint: Optional[ProcessingCheckpoint] = None,
    ) -> TranscriptionResult:
        started = time.monotonic()
        if duration is None:
            duration = await probe_duration(audio_path)

        chunks_dir = os.path.join(work_dir, "audio_chunks")
        os.makedirs(chunks_dir, exist_ok=True)
        vad = await self._detect(audio_path, chunks_dir, duration)

        completed = set(checkpoint.completed_audio_chunks) if checkpoint else set()
        cached_segments = list(checkpoint.transcription_segments) if checkpoint else []
        if checkpoint and checkpoint.total_audio_chunks not in (None, len(vad.chunks)):
            logger.warning(
                "[TRANSCRIBE] Chunk count changed since checkpoint (%s -> %d)",
                checkpoint.total_audio_chunks, len(vad.chunks),
            )

        pending = [c for c in vad.chunks if c.chunk_index not in completed]
        logger.info(
            "[TRANSCRIBE] %d chunks total, %d cached, %d to transcribe (concurrency=%d)",
            len(vad.chunks), len(vad.chunks) - len(pending), len(pending), self.concurrency,
        )

        sem = asyncio.Semaphore(self.concurrency)
        flush_lock = asyncio.Lock()
        unsaved_indices: List[int] = []
        unsaved_segments: List[TranscriptionSegment] = []
        new_segments: List[TranscriptionSegment] = []
        counts: Dict[str, int] = {"ok": 0, "failed": 0}

        async def flush():
            async with flush_lock:
                if not unsaved_indices or self.checkpoint_store is None or upload_id is None:
                    return
                indices, segments = list(unsaved_indices), list(unsaved_segments)
                unsaved_indices.clear()
                unsaved_segments.clear()
                await self.checkpoint_store.add_completed_audio_chunks(upload_id, indices, segments)
                if self.shutdown is not None:
                    self.shutdown.clear_pending_transcription(upload_id, indices)
                logger.info("[TRANSCRIBE] Checkpointed %d chunks", len(indices))

        async def worker(chunk: AudioChunk):
            async with sem:
                segments = await self._transcribe_chunk(audio_path, chunk)
            if segments is None:
                counts["failed"] += 1
                return
            counts["ok"] += 1
            new_segments.extend(segments)
            unsaved_indices.append(chunk.chunk_index)
            unsaved_segments.extend(segments)
            if self.shutdown is not None and upload_id is not None:
                self.shutdown.record_pending_transcription(upload_id, chunk.chunk_index, segments)
            if len(unsaved_indices) >= self.checkpoint_interval:
                await flush()

        await asyncio.gather(*(worker(c) for c in pending))
        await flush()

        segments = _dedupe_sorted(cached_segments + new_segments)
        result = TranscriptionResult(
            segments=segments,
            total_duration=vad.total_duration,
            voice_duration=vad.voice_duration,
            voice_ratio=vad.voice_ratio,
            estimated_savings=vad.estimated_savings,
            estimated_cost_usd=vad.voice_duration / 60 * WHISPER_COST_PER_MINUTE,
            chunks_total=len(vad.chunks),
            chunks_transcribed=counts["ok"],
            chunks_cached=len(vad.chunks) - len(pending),
            chunks_failed=counts["failed"],
            used_fallback=vad.used_fallback,
        )
        logger.info(
            "[TRANSCRIBE] Done in %.1fs: %d segments, %d/%d chunks failed, cost≈$%.4f%s",
            time.monotonic() - started, len(segments), result.chunks_failed, result.chunks_total,
            result.estimated_cost_usd, " (fallback)" if result.used_fallback else "",
        )
        return result
