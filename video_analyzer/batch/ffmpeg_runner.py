# ffmpeg_runner.py
"""
ffmpeg / ffprobe as asyncio subprocesses.

Every call has a hard timeout and a stall timeout (no stdout/stderr output for
N seconds). Either one kills the process and raises; nothing waits forever.
CPU-heavy media work stays in the child process, off the event loop.
"""
import os
import json
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from decouple import config

from video_analyzer.core import timeouts
from video_analyzer.core.exceptions import (
    MediaError,
    NoVideoStreamError,
    SubprocessError,
    SubprocessStallError,
    SubprocessTimeoutError,
)

logger = logging.getLogger("ffmpeg_runner")


def env(key, default=None):
    return os.getenv(key) or config(key, default=default)


FFMPEG_BIN = env("FFMPEG_PATH", "ffmpeg")
FFPROBE_BIN = env("FFPROBE_PATH", "ffprobe")


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass
class VideoMetadata:
    duration: float
    width: int
    height: int
    has_video: bool
    has_audio: bool

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 16 / 9


def _kill(proc):
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def run_process(
    cmd: Sequence[str],
    timeout: float,
    stall_timeout: Optional[float] = timeouts.STALL,
    label: Optional[str] = None,
) -> ProcessResult:
    """
    Run a command, collecting output. Raises SubprocessTimeoutError past
    `timeout`, SubprocessStallError after `stall_timeout` seconds of silence.
    A non-zero exit is returned, not raised.
    """
    label = label or os.path.basename(cmd[0])
    loop = asyncio.get_running_loop()
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    started = loop.time()
    last_output = started
    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []

    async def pump(stream, sink):
        nonlocal last_output
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            last_output = loop.time()
            sink.append(chunk)

    pump_task = asyncio.ensure_future(
        asyncio.gather(pump(proc.stdout, stdout_chunks), pump(proc.stderr, stderr_chunks))
    )
    wait_task = asyncio.ensure_future(proc.wait())
    poll = min(0.5, timeout / 4, (stall_timeout or timeout) / 4)

    try:
        while not wait_task.done():
            now = loop.time()
            if now - started > timeout:
                raise SubprocessTimeoutError(f"{label} timed out after {timeout:.0f}s")
            if stall_timeout and now - last_output > stall_timeout:
                raise SubprocessStallError(f"{label} stalled: no output for {stall_timeout:.0f}s")
            await asyncio.wait({wait_task}, timeout=poll)
        await pump_task
    except BaseException:
        _kill(proc)
        pump_task.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(wait_task), timeout=5)
        except asyncio.TimeoutError:
            logger.error("[FFMPEG] %s did not exit after kill (pid=%s)", label, proc.pid)
        raise

    return ProcessResult(
        returncode=proc.returncode,
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
    )


async def run_ffmpeg(args: Sequence[str], timeout: float, label: str = "ffmpeg", stall_timeout=timeouts.STALL) -> ProcessResult:
    result = await run_process([FFMPEG_BIN, "-hide_banner", "-y", *args], timeout, stall_timeout, label)
    if result.returncode != 0:
        tail = result.stderr.strip()[-500:]
        raise SubprocessError(f"{label} failed (exit {result.returncode}): {tail}", result.returncode, result.stderr)
    return result


async def probe_video(video_path: str, require_video: bool = True) -> VideoMetadata:
    cmd = [
        FFPROBE_BIN,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        video_path,
    ]
    result = await run_process(cmd, timeouts.METADATA, label="ffprobe")
    if result.returncode != 0:
        raise MediaError(f"ffprobe failed for {os.path.basename(video_path)}: {result.stderr.strip()[-300:]}")

    try:
        info = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise MediaError(f"ffprobe returned invalid JSON: {e}") from e

    streams = info.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)
    if video is None and require_video:
        raise NoVideoStreamError(f"No video stream in {os.path.basename(video_path)}")

    try:
        duration = float(info.get("format", {}).get("duration") or (video or {}).get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    meta = VideoMetadata(
        duration=duration,
        width=int((video or {}).get("width") or 0),
        height=int((video or {}).get("height") or 0),
        has_video=video is not None,
        has_audio=has_audio,
    )
    logger.info(
        "[FFMPEG] Video metadata: %dx%d (%.2f:1), %.1fs, audio=%s",
        meta.width, meta.height, meta.aspect_ratio, meta.duration, meta.has_audio,
    )
    return meta


async def probe_duration(media_path: str) -> float:
    cmd = [
        FFPROBE_BIN,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        media_path,
    ]
    result = await run_process(cmd, timeouts.METADATA, label="ffprobe")
    try:
        return float(result.stdout.strip())
    except ValueError as e:
        raise MediaError(f"Could not read duration of {os.path.basename(media_path)}") from e


async def extract_audio(video_path: str, out_path: str) -> str:
    """Mono 16kHz MP3, enough for VAD and Whisper."""
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    await run_ffmpeg(
        ["-i", video_path, "-vn", "-ac", "1", "-ar", "16000", "-b:a", "64k", "-f", "mp3", out_path],
        timeouts.AUDIO_EXTRACTION,
        label="audio extraction",
    )
    return out_path


async def preprocess_audio(in_path: str, out_path: str) -> str:
    """Band-pass + loudness normalisation to help VAD on noisy or quiet tracks."""
    await run_ffmpeg(
        [
            "-i", in_path,
            "-af", "highpass=f=80,lowpass=f=8000,loudnorm=I=-16:TP=-1.5:LRA=11",
            "-ac", "1", "-ar", "16000", "-b:a", "64k",
            out_path,
        ],
        timeouts.AUDIO_PREPROCESSING,
        label="audio preprocessing",
    )
    return out_path


async def extract_audio_segment(
    in_path: str,
    out_path: str,
    start: float,
    duration: float,
    timeout: float = timeouts.AUDIO_CHUNK,
) -> str:
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    await run_ffmpeg(
        ["-ss", f"{start:.3f}", "-i", in_path, "-t", f"{duration:.3f}", "-ac", "1", "-ar", "16000", out_path],
        timeout,
        label=f"audio segment @{start:.1f}s",
    )
    return out_path


async def extract_frame(video_path: str, timestamp: float, out_path: str, size: str = "1280x720") -> str:
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    await run_ffmpeg(
        ["-ss", f"{timestamp:.3f}", "-i", video_path, "-frames:v", "1", "-s", size, out_path],
        timeouts.FRAME_EXTRACTION,
        label=f"frame @{timestamp:.1f}s",
    )
    if not os.path.exists(out_path):
        raise MediaError(f"No frame produced at {timestamp:.1f}s")
    return out_path
