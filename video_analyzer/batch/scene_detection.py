# scene_detection.py
"""
Multi-pass scene cut detection with ffmpeg's scene score.

1. one `select='gt(scene,T)',showinfo` pass per threshold on the full frame,
   optionally repeated on cropped regions (subtitle band, corners)
2. merge: same timestamp → max confidence, sources unioned; cuts closer than
   `merge_epsilon` collapse to the higher-confidence one (ties keep the earlier)
3. second filter: drop cuts closer than `min_scene_interval` to the previous kept cut
4. scenes [cut_i, cut_i+1), the last one ending at the video end; scenes under
   `min_scene_duration` are skipped without using a scene number

In "enhanced" mode a signalstats luminance pass adds the points where the
picture settles after a white or black screen (fades and flashes);
each is kept only when it is at least 1s from every other cut. A failed
luminance pass leaves the standard cuts.
"""
import os
import re
import math
import asyncio
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from video_analyzer.batch.ffmpeg_runner import extract_frame, run_ffmpeg
from video_analyzer.core import timeouts
from video_analyzer.core.exceptions import SubprocessError
from video_analyzer.models.checkpoint import Scene, SceneCut

logger = logging.getLogger("scene_detection")

DEFAULT_THRESHOLDS = (0.03, 0.05, 0.10)
FULL_FRAME = "full_frame"
SCENE_MODES = ("standard", "enhanced")

ROI_CROPS = {
    "bottom": "crop=iw:ih*0.25:0:ih*0.75",
    "center": "crop=iw*0.6:ih*0.4:iw*0.2:ih*0.3",
    "top_left": "crop=iw*0.4:ih*0.25:0:0",
    "top_right": "crop=iw*0.4:ih*0.25:iw*0.6:0",
}

PTS_TIME_RE = re.compile(r"pts_time:(\d+\.?\d*)")


def format_timecode(seconds: float) -> str:
    total = int(max(0.0, seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def floor_tenth(value: float) -> float:
    return math.floor(round(value * 10, 6)) / 10


def parse_scene_timestamps(stderr: str, threshold: float, source: str = FULL_FRAME) -> List[SceneCut]:
    """Cuts from showinfo output, floored to 0.1s."""
    return [
        SceneCut(timestamp=floor_tenth(float(m.group(1))), confidence=threshold, source=source)
        for m in PTS_TIME_RE.finditer(stderr)
    ]


def _join_sources(*sources: Optional[str]) -> Optional[str]:
    names: List[str] = []
    for source in sources:
        for name in (source or "").split(","):
            if name and name not in names:
                names.append(name)
    return ",".join(names) or None


def merge_cuts(passes: Iterable[Sequence[SceneCut]], epsilon: float = 0.1) -> List[SceneCut]:
    by_time: Dict[float, SceneCut] = {}
    for cuts in passes:
        for cut in cuts:
            existing = by_time.get(cut.timestamp)
            if existing is None:
                by_time[cut.timestamp] = cut.model_copy()
            else:
                existing.confidence = max(existing.confidence, cut.confidence)
                existing.source = _join_sources(existing.source, cut.source)

    merged: List[SceneCut] = []
    for cut in sorted(by_time.values(), key=lambda c: c.timestamp):
        if merged and cut.timestamp - merged[-1].timestamp < epsilon - 1e-9:
            previous = merged[-1]
            if cut.confidence > previous.confidence:
                cut.source = _join_sources(cut.source, previous.source)
                cut.detection_reason = f"merged with {previous.timestamp:.2f}s (lower confidence)"
                merged[-1] = cut
            else:
                previous.source = _join_sources(previous.source, cut.source)
                previous.detection_reason = f"merged with {cut.timestamp:.2f}s"
            continue
        merged.append(cut)
    return merged


def filter_min_interval(cuts: Sequence[SceneCut], min_interval: float) -> List[SceneCut]:
    kept: List[SceneCut] = []
    for cut in cuts:
        if kept and cut.timestamp - kept[-1].timestamp < min_interval:
            logger.debug("[SCENE] Dropping cut at %.2fs (< %.2fs after %.2fs)", cut.timestamp, min_interval, kept[-1].timestamp)
            continue
        kept.append(cut)
    return kept


def build_scenes(
    cuts: Sequence[SceneCut],
    video_duration: float,
    min_scene_duration: float = 0.5,
    sample_ratio: float = 0.5,
) -> List[Scene]:
    if not cuts:
        cuts = [SceneCut(timestamp=0.0, confidence=DEFAULT_THRESHOLDS[0], detection_reason="no cuts detected")]

    scenes: List[Scene] = []
    for i, cut in enumerate(cuts):
        start = cut.timestamp
        end = cuts[i + 1].timestamp if i < len(cuts) - 1 else video_duration
        if end - start < min_scene_duration:
            logger.debug("[SCENE] Skipping short scene %.2fs-%.2fs", start, end)
            continue
        scenes.append(Scene(
            scene_number=len(scenes) + 1,
            start_time=start,
            end_time=end,
            sample_time=start + (end - start) * sample_ratio,
            timecode=format_timecode(start),
        ))

    if not scenes and video_duration > 0:
        scenes.append(Scene(
            scene_number=1,
            start_time=0.0,
            end_time=video_duration,
            sample_time=video_duration * sample_ratio,
            timecode=format_timecode(0),
        ))
    return scenes


def scene_frame_path(frames_dir: str, scene: Scene) -> str:
    return os.path.join(frames_dir, f"scene-{scene.scene_number:04d}.png")


async def extract_scene_frame(video_path: str, scene: Scene, frames_dir: str) -> str:
    path = scene_frame_path(frames_dir, scene)
    if not os.path.exists(path):
        await extract_frame(video_path, scene.sample_time, path)
    return path


# luminance pass (enhanced mode)

LUMINANCE_FPS = 10
WHITE_LEVEL = 230.0
BLACK_LEVEL = 25.0
MIN_FLAT_DURATION = 0.5
STABLE_VARIATION = 0.03
STABLE_WINDOW = 0.3
STABLE_LOOKAHEAD = 2.0
ENHANCED_MIN_GAP = 1.0

YAVG_RE = re.compile(r"YAVG=(\d+\.?\d*)")


class LuminanceSample(NamedTuple):
    timestamp: float
    luminance: float


class FlatInterval(NamedTuple):
    start: float
    end: float
    luminance: float


def parse_luminance(stderr: str) -> List[LuminanceSample]:
    """(pts_time, YAVG) pairs from `metadata=mode=print` output, sorted and de-duplicated."""
    samples: Dict[float, float] = {}
    current: Optional[float] = None
    for line in stderr.splitlines():
        time_match = PTS_TIME_RE.search(line)
        if time_match:
            current = float(time_match.group(1))
        yavg_match = YAVG_RE.search(line)
        if yavg_match and current is not None:
            samples.setdefault(current, float(yavg_match.group(1)))
    return [LuminanceSample(t, samples[t]) for t in sorted(samples)]


def flat_intervals(samples: Sequence[LuminanceSample], is_flat, min_duration: float = MIN_FLAT_DURATION) -> List[FlatInterval]:
    """Runs of samples matching `is_flat` lasting at least `min_duration`."""
    intervals: List[FlatInterval] = []
    run: List[LuminanceSample] = []

    def close(end: float):
        if run and end - run[0].timestamp >= min_duration:
            intervals.append(FlatInterval(run[0].timestamp, end, sum(s.luminance for s in run) / len(run)))

    for sample in samples:
        if is_flat(sample.luminance):
            run.append(sample)
            continue
        close(sample.timestamp)
        run = []
    if run:
        close(samples[-1].timestamp)
    return intervals


def stabilization_cuts(
    samples: Sequence[LuminanceSample],
    intervals: Sequence[FlatInterval],
    source: str,
    fps: float = LUMINANCE_FPS,
) -> List[SceneCut]:
    """First steady window after each white/black interval, one cut per interval."""
    window = max(1, math.ceil(round(STABLE_WINDOW * fps, 6)))
    cuts: List[SceneCut] = []
    for interval in intervals:
        after = [s for s in samples if interval.end < s.timestamp < interval.end + STABLE_LOOKAHEAD]
        for i in range(window, len(after) + 1):
            frame = after[i - window:i]
            mean = sum(s.luminance for s in frame) / len(frame)
            if max(abs(s.luminance - mean) for s in frame) / 255 > STABLE_VARIATION:
                continue
            change = abs(mean - interval.luminance) / 255
            cuts.append(SceneCut(
                timestamp=floor_tenth(frame[0].timestamp),
                confidence=round(min(change / 0.5, 1.0), 3),
                source=source,
                detection_reason=f"luminance settled after {interval.start:.1f}-{interval.end:.1f}s",
            ))
            break
    return cuts


def luminance_cuts(samples: Sequence[LuminanceSample]) -> List[SceneCut]:
    white = flat_intervals(samples, lambda y: y >= WHITE_LEVEL)
    black = flat_intervals(samples, lambda y: y <= BLACK_LEVEL)
    logger.info("[SCENE] luminance: %d white intervals, %d black intervals", len(white), len(black))
    cuts = stabilization_cuts(samples, white, "luminance_from_white") + stabilization_cuts(samples, black, "luminance_from_black")
    return sorted(cuts, key=lambda c: c.timestamp)


def merge_enhanced_cuts(cuts: Sequence[SceneCut], extra: Sequence[SceneCut], min_gap: float = ENHANCED_MIN_GAP) -> List[SceneCut]:
    """Add extra cuts that are at least `min_gap` from every kept cut."""
    merged = list(cuts)
    for candidate in sorted(extra, key=lambda c: c.timestamp):
        if any(abs(candidate.timestamp - c.timestamp) < min_gap for c in merged):
            logger.debug("[SCENE] Skipping %s cut at %.2fs (overlaps existing)", candidate.source, candidate.timestamp)
            continue
        merged.append(candidate)
    return sorted(merged, key=lambda c: c.timestamp)


class SceneDetector:
    def __init__(
        self,
        thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
        roi_regions: Sequence[str] = (),
        merge_epsilon: float = 0.1,
        min_scene_interval: float = 1.0,
        min_scene_duration: float = 0.5,
        sample_ratio: float = 0.5,
        mode: str = "standard",
    ):
        if mode not in SCENE_MODES:
            raise ValueError(f"Unknown scene detection mode: {mode}")
        unknown = [r for r in roi_regions if r not in ROI_CROPS]
        if unknown:
            raise ValueError(f"Unknown ROI regions: {unknown}")
        self.thresholds = list(thresholds)
        self.roi_regions = list(roi_regions)
        self.merge_epsilon = merge_epsilon
        self.min_scene_interval = min_scene_interval
        self.min_scene_duration = min_scene_duration
        self.sample_ratio = sample_ratio
        self.mode = mode

    async def run_pass(self, video_path: str, threshold: float, crop: Optional[str] = None, source: str = FULL_FRAME) -> List[SceneCut]:
        vf = f"select='gt(scene,{threshold})',showinfo"
        if crop:
            vf = f"{crop},{vf}"
        result = await run_ffmpeg(
            ["-i", video_path, "-vf", vf, "-an", "-f", "null", "-"],
            timeouts.SCENE_DETECTION,
            label=f"scene detection ({source} @ {threshold})",
        )
        cuts = parse_scene_timestamps(result.stderr, threshold, source)
        logger.info("[SCENE] %s threshold=%.2f: %d cuts", source, threshold, len(cuts))
        return cuts

    async def run_luminance_pass(self, video_path: str) -> List[SceneCut]:
        result = await run_ffmpeg(
            ["-i", video_path, "-vf", f"fps={LUMINANCE_FPS},format=gray,signalstats,metadata=mode=print", "-an", "-f", "null", "-"],
            timeouts.SCENE_DETECTION,
            label="scene detection (luminance)",
        )
        samples = parse_luminance(result.stderr)
        cuts = luminance_cuts(samples)
        logger.info("[SCENE] luminance: %d samples, %d stabilization points", len(samples), len(cuts))
        return cuts

    async def detect_cuts(self, video_path: str) -> List[SceneCut]:
        passes: List[List[SceneCut]] = []
        for threshold in self.thresholds:
            passes.append(await self.run_pass(video_path, threshold))

        roi_threshold = min(self.thresholds) if self.thresholds else DEFAULT_THRESHOLDS[0]
        for region in self.roi_regions:
            source = f"roi_{region}"
            try:
                passes.append(await self.run_pass(video_path, roi_threshold, ROI_CROPS[region], source))
            except (SubprocessError, asyncio.TimeoutError) as e:
                logger.warning("[SCENE] %s pass failed, using full-frame cuts only: %s", source, e)

        merged = merge_cuts(passes, self.merge_epsilon)
        filtered = filter_min_interval(merged, self.min_scene_interval)
        logger.info(
            "[SCENE] %d raw cuts -> %d merged -> %d after %.1fs interval filter",
            sum(len(p) for p in passes), len(merged), len(filtered), self.min_scene_interval,
        )

        if self.mode == "enhanced":
            try:
                extra = await self.run_luminance_pass(video_path)
            except (SubprocessError, asyncio.TimeoutError) as e:
                logger.warning("[SCENE] luminance pass failed, using standard cuts only: %s", e)
            else:
                count = len(filtered)
                filtered = merge_enhanced_cuts(filtered, extra)
                logger.info("[SCENE] enhanced mode added %d cuts", len(filtered) - count)
        return filtered

    def build_scenes(self, cuts: Sequence[SceneCut], video_duration: float) -> List[Scene]:
        scenes = build_scenes(cuts, video_duration, self.min_scene_duration, self.sample_ratio)
        logger.info("[SCENE] %d scenes from %d cuts", len(scenes), len(cuts))
        return scenes

    async def detect(self, video_path: str, video_duration: float) -> Tuple[List[SceneCut], List[Scene]]:
        cuts = await self.detect_cuts(video_path)
        return cuts, self.build_scenes(cuts, video_duration)
