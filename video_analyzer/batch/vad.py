# vad.py
"""
Voice activity detection ahead of Whisper.

Only voiced audio is sent for transcription: Silero VAD (bundled with
faster-whisper) finds speech intervals, which are then grouped into chunks of
at most `max_chunk_duration` seconds.

Long tracks (>= PreChunkConfig.min_duration) are cut into overlapping windows
first; each window is analysed on its own and the results are shifted back to
absolute time; chunks overlapping a window boundary are merged or trimmed so
the overlap is transcribed once.
"""
import os
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from video_analyzer.batch.ffmpeg_runner import extract_audio_segment
from video_analyzer.core import timeouts

logger = logging.getLogger("vad")

SAMPLE_RATE = 16000
WHISPER_COST_PER_MINUTE = 0.006
MERGE_EPSILON = 0.1


@dataclass
class VadConfig:
    max_chunk_duration: float = 10.0
    min_speech_duration: float = 0.10
    sensitivity: float = 0.3


@dataclass
class PreChunkConfig:
    enabled: bool = True
    chunk_duration: float = 300.0
    overlap: float = 1.0
    min_duration: float = 600.0


@dataclass
class VoiceInterval:
    start: float
    end: float
    confidence: float = 0.9

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class AudioChunk:
    chunk_index: int
    start: float
    end: float
    file_path: str
    intervals: List[VoiceInterval] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class VadResult:
    total_duration: float
    voice_duration: float
    intervals: List[VoiceInterval]
    chunks: List[AudioChunk]
    voice_ratio: float
    estimated_savings: float
    used_fallback: bool = False


def chunk_path(output_dir: str, index: int) -> str:
    return os.path.join(output_dir, f"chunk-{index:04d}.mp3")


# =========================
# DETECTION
# =========================

def _speech_timestamps(audio: np.ndarray, config: VadConfig) -> List[VoiceInterval]:
    from faster_whisper.vad import VadOptions, get_speech_timestamps

    options = VadOptions(
        threshold=config.sensitivity,
        neg_threshold=config.sensitivity * 0.7,
        min_speech_duration_ms=0,
    )
    stamps = get_speech_timestamps(audio, vad_options=options, sampling_rate=SAMPLE_RATE)
    return [VoiceInterval(start=s["start"] / SAMPLE_RATE, end=s["end"] / SAMPLE_RATE) for s in stamps]


def _detect_sync(audio_path: str, config: VadConfig) -> List[VoiceInterval]:
    from faster_whisper.audio import decode_audio

    audio = decode_audio(audio_path, sampling_rate=SAMPLE_RATE)
    logger.info("[VAD] Decoded %s: %d samples (%.1fs)", os.path.basename(audio_path), len(audio), len(audio) / SAMPLE_RATE)
    return _speech_timestamps(audio, config)


async def detect_voice_intervals(audio_path: str, config: VadConfig) -> List[VoiceInterval]:
    """Raw voiced intervals (seconds, relative to the file start), before length filtering."""
    loop = asyncio.get_running_loop()
    intervals = await asyncio.wait_for(
        loop.run_in_executor(None, _detect_sync, audio_path, config),
        timeout=timeouts.PCM_CONVERSION,
    )
    logger.info("[VAD] Detected %d voice segments in %s", len(intervals), os.path.basename(audio_path))
    return intervals


def filter_short(intervals: List[VoiceInterval], min_duration: float) -> List[VoiceInterval]:
    kept = [i for i in intervals if i.duration >= min_duration]
    excluded = len(intervals) - len(kept)
    if excluded:
        logger.info("[VAD] Excluded %d segments shorter than %.2fs", excluded, min_duration)
    return kept


# =========================
# CHUNKING
# =========================

def split_into_chunks(
    intervals: List[VoiceInterval],
    output_dir: str,
    max_chunk_duration: float,
) -> List[AudioChunk]:
    """Group consecutive intervals while the chunk span stays within max_chunk_duration."""
    chunks: List[AudioChunk] = []
    if not intervals:
        return chunks

    current: List[VoiceInterval] = []
    start = intervals[0].start
    end = start

    for interval in intervals:
        if interval.end - start > max_chunk_duration and current:
            chunks.append(AudioChunk(len(chunks), start, end, chunk_path(output_dir, len(chunks)), current))
            current = [interval]
            start = interval.start
            end = interval.end
        else:
            current.append(interval)
            end = interval.end

    if current:
        chunks.append(AudioChunk(len(chunks), start, end, chunk_path(output_dir, len(chunks)), current))
    return chunks


def fallback_chunks(total_duration: float, output_dir: str, chunk_duration: float = 30.0) -> List[AudioChunk]:
    """Whole track in fixed chunks, used when no voice was found at all."""
    chunks = []
    start = 0.0
    while start < total_duration:
        end = min(start + chunk_duration, total_duration)
        interval = VoiceInterval(start, end, confidence=0.0)
        chunks.append(AudioChunk(len(chunks), start, end, chunk_path(output_dir, len(chunks)), [interval]))
        start = end
    return chunks


def merge_intervals(intervals: List[VoiceInterval], epsilon: float = MERGE_EPSILON) -> List[VoiceInterval]:
    """Merge intervals that overlap or are within epsilon of each other, keeping the wider span."""
    merged: List[VoiceInterval] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and interval.start <= merged[-1].end + epsilon:
            last = merged[-1]
            last.end = max(last.end, interval.end)
            last.confidence = max(last.confidence, interval.confidence)
        else:
            merged.append(VoiceInterval(interval.start, interval.end, interval.confidence))
    return merged


def _clip(intervals: List[VoiceInterval], start: float) -> List[VoiceInterval]:
    return [VoiceInterval(max(i.start, start), i.end, i.confidence) for i in intervals if i.end > start]


def merge_window_chunks(
    chunks: List[AudioChunk],
    output_dir: str,
    max_chunk_duration: float = 10.0,
    epsilon: float = MERGE_EPSILON,
) -> List[AudioChunk]:
    """
    Resolve chunks that overlap across a window boundary so no audio is sent
    twice, then renumber 0..n-1 in time order.

    An overlapping chunk is folded into the previous one when the union still
    fits in max_chunk_duration; otherwise it is trimmed to start where the
    previous chunk ends (and dropped if nothing longer than epsilon is left).
    """
    kept: List[AudioChunk] = []
    for chunk in sorted(chunks, key=lambda c: (c.start, c.end)):
        if not kept or chunk.start >= kept[-1].end:
            kept.append(AudioChunk(0, chunk.start, chunk.end, "", list(chunk.intervals)))
            continue

        last = kept[-1]
        if chunk.end <= last.end:
            continue
        if max(last.end, chunk.end) - last.start <= max_chunk_duration:
            last.end = chunk.end
            last.intervals = merge_intervals(last.intervals + chunk.intervals, epsilon)
            continue

        start = last.end
        if chunk.end - start > epsilon:
            kept.append(AudioChunk(0, start, chunk.end, "", _clip(chunk.intervals, start)))

    return [
        AudioChunk(index, c.start, c.end, chunk_path(output_dir, index), c.intervals)
        for index, c in enumerate(kept)
    ]


def _shift(intervals: List[VoiceInterval], offset: float) -> List[VoiceInterval]:
    return [VoiceInterval(i.start + offset, i.end + offset, i.confidence) for i in intervals]


def _build_result(total_duration, intervals, chunks) -> VadResult:
    voice_duration = sum(i.duration for i in intervals)
    voice_ratio = voice_duration / total_duration if total_duration > 0 else 0.0
    savings = (1 - voice_ratio) * 100 if total_duration > 0 else 0.0
    return VadResult(
        total_duration=total_duration,
        voice_duration=voice_duration,
        intervals=intervals,
        chunks=chunks,
        voice_ratio=voice_ratio,
        estimated_savings=savings,
    )


def build_fallback_result(total_duration: float, output_dir: str, chunk_duration: float = 30.0) -> VadResult:
    chunks = fallback_chunks(total_duration, output_dir, chunk_duration)
    logger.warning(
        "[VAD] No voice detected: transcribing the whole track in %d x %.0fs chunks", len(chunks), chunk_duration
    )
    return VadResult(
        total_duration=total_duration,
        voice_duration=total_duration,
        intervals=[VoiceInterval(0.0, total_duration, confidence=0.0)],
        chunks=chunks,
        voice_ratio=1.0,
        estimated_savings=0.0,
        used_fallback=True,
    )


# =========================
# ENTRY POINT
# =========================

async def run_vad(
    audio_path: str,
    output_dir: str,
    total_duration: float,
    config: Optional[VadConfig] = None,
    prechunk: Optional[PreChunkConfig] = None,
) -> VadResult:
    config = config or VadConfig()
    prechunk = prechunk or PreChunkConfig()
    os.makedirs(output_dir, exist_ok=True)

    if not (prechunk.enabled and total_duration >= prechunk.min_duration):
        raw = await detect_voice_intervals(audio_path, config)
        intervals = filter_short(raw, config.min_speech_duration)
        chunks = split_into_chunks(intervals, output_dir, config.max_chunk_duration)
        result = _build_result(total_duration, intervals, chunks)
    else:
        result = await _run_windowed(audio_path, output_dir, total_duration, config, prechunk)

    logger.info(
        "[VAD] total=%.1fs voice=%.1fs ratio=%.1f%% savings=%.1f%% chunks=%d",
        result.total_duration, result.voice_duration, result.voice_ratio * 100,
        result.estimated_savings, len(result.chunks),
    )
    return result


async def _run_windowed(audio_path, output_dir, total_duration, config, prechunk) -> VadResult:
    windows_dir = os.path.join(output_dir, "windows")
    os.makedirs(windows_dir, exist_ok=True)

    all_intervals: List[VoiceInterval] = []
    all_chunks: List[AudioChunk] = []
    offset = 0.0
    window_index = 0

    logger.info(
        "[VAD] Pre-chunking %.1fs of audio into %.0fs windows (overlap %.0fs)",
        total_duration, prechunk.chunk_duration, prechunk.overlap,
    )
    while offset < total_duration:
        length = min(prechunk.chunk_duration + prechunk.overlap, total_duration - offset)
        window_path = os.path.join(windows_dir, f"window-{window_index:04d}.mp3")
        await extract_audio_segment(audio_path, window_path, offset, length, timeout=timeouts.PCM_CONVERSION)

        try:
            raw = await detect_voice_intervals(window_path, config)
        finally:
            if os.path.exists(window_path):
                os.remove(window_path)

        intervals = _shift(filter_short(raw, config.min_speech_duration), offset)
        window_chunks = split_into_chunks(intervals, output_dir, config.max_chunk_duration)
        all_intervals.extend(intervals)
        all_chunks.extend(window_chunks)

        logger.info(
            "[VAD] Window %d @%.0fs: %d intervals, %d chunks", window_index, offset, len(intervals), len(window_chunks)
        )
        offset += prechunk.chunk_duration
        window_index += 1

    merged_intervals = merge_intervals(all_intervals)
    merged_chunks = merge_window_chunks(all_chunks, output_dir, config.max_chunk_duration)
    return _build_result(total_duration, merged_intervals, merged_chunks)
