import unittest
from unittest.mock import AsyncMock, patch

from video_analyzer.batch.ffmpeg_runner import ProcessResult
from video_analyzer.batch.scene_detection import (
    SceneDetector,
    build_scenes,
    filter_min_interval,
    format_timecode,
    flat_intervals,
    luminance_cuts,
    merge_enhanced_cuts,
    merge_cuts,
    parse_luminance,
    parse_scene_timestamps,
)
from video_analyzer.core.exceptions import SubprocessError
from video_analyzer.models.checkpoint import SceneCut

SHOWINFO = """
[Parsed_showinfo_1 @ 0x1] n:   0 pts:  12800 pts_time:0.5     duration:512
[Parsed_showinfo_1 @ 0x1] n:   1 pts: 128000 pts_time:5.06    duration:512
[Parsed_showinfo_1 @ 0x1] n:   2 pts: 320000 pts_time:12.999  duration:512
"""


def cut(ts, conf=0.05, source="full_frame"):
    return SceneCut(timestamp=ts, confidence=conf, source=source)


class TestParsing(unittest.TestCase):
    def test_pts_times_floored_to_tenth(self):
        cuts = parse_scene_timestamps(SHOWINFO, 0.05)
        self.assertEqual([c.timestamp for c in cuts], [0.5, 5.0, 12.9])
        self.assertTrue(all(c.confidence == 0.05 for c in cuts))

    def test_timecode(self):
        self.assertEqual(format_timecode(0), "00:00:00")
        self.assertEqual(format_timecode(3725.9), "01:02:05")


class TestMergeCuts(unittest.TestCase):
    def test_same_timestamp_keeps_max_confidence_and_unions_sources(self):
        merged = merge_cuts([[cut(5.0, 0.03)], [cut(5.0, 0.10)], [cut(5.0, 0.03, "roi_bottom")]])
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0].confidence, 0.10)
        self.assertEqual(merged[0].source, "full_frame,roi_bottom")

    def test_cuts_within_epsilon_collapse_to_higher_confidence(self):
        merged = merge_cuts([[cut(5.0, 0.03)], [cut(5.05, 0.10)]], epsilon=0.1)
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0].timestamp, 5.05)
        self.assertIsNotNone(merged[0].detection_reason)

    def test_tie_keeps_earlier(self):
        merged = merge_cuts([[cut(5.0, 0.05), cut(5.05, 0.05)]], epsilon=0.1)
        self.assertEqual([c.timestamp for c in merged], [5.0])

    def test_cuts_epsilon_apart_stay_separate(self):
        merged = merge_cuts([[cut(5.0), cut(5.1)]], epsilon=0.1)
        self.assertEqual(len(merged), 2)

    def test_output_is_sorted(self):
        merged = merge_cuts([[cut(9.0), cut(1.0)], [cut(4.0)]])
        self.assertEqual([c.timestamp for c in merged], [1.0, 4.0, 9.0])

    def test_min_interval_drops_close_followers(self):
        kept = filter_min_interval([cut(0.0), cut(0.6), cut(1.2), cut(1.9)], 1.0)
        self.assertEqual([c.timestamp for c in kept], [0.0, 1.2])


class TestBuildScenes(unittest.TestCase):
    def test_scenes_tile_the_video(self):
        scenes = build_scenes([cut(0.0), cut(4.0), cut(10.0)], 30.0)

        self.assertEqual([(s.start_time, s.end_time) for s in scenes], [(0.0, 4.0), (4.0, 10.0), (10.0, 30.0)])
        self.assertEqual([s.scene_number for s in scenes], [1, 2, 3])
        self.assertEqual(scenes[1].sample_time, 7.0)
        self.assertEqual(scenes[2].timecode, "00:00:10")

    def test_short_scene_is_skipped_without_a_number(self):
        scenes = build_scenes([cut(0.0), cut(4.0), cut(4.3), cut(8.0)], 10.0, min_scene_duration=0.5)

        self.assertEqual([s.start_time for s in scenes], [0.0, 4.3, 8.0])
        self.assertEqual([s.scene_number for s in scenes], [1, 2, 3])

    def test_no_cuts_is_one_scene(self):
        scenes = build_scenes([], 20.0)
        self.assertEqual(len(scenes), 1)
        self.assertEqual((scenes[0].start_time, scenes[0].end_time), (0.0, 20.0))

    def test_only_a_too_short_tail_falls_back_to_whole_video(self):
        scenes = build_scenes([cut(9.8)], 10.0)
        self.assertEqual(len(scenes), 1)
        self.assertEqual((scenes[0].start_time, scenes[0].end_time), (0.0, 10.0))


def metadata_output(levels):
    lines = []
    for i, level in enumerate(levels):
        lines.append(f"[Parsed_metadata_3 @ 0x1] frame:{i} pts:{i * 100} pts_time:{round(i * 0.1, 1)}")
        lines.append(f"[Parsed_metadata_3 @ 0x1] lavfi.signalstats.YAVG={level}")
    return "\n".join(lines) + "\n"


# 0-2.9s normal picture, 3.0-4.0s white flash, settles at 100 from 4.3s
FLASH = [100.0] * 30 + [250.0] * 11 + [150.0, 120.0] + [100.0] * 37


class TestLuminance(unittest.TestCase):
    def test_parse_luminance_pairs_times_with_levels(self):
        samples = parse_luminance(metadata_output([16.5, 17.0, 240.0]))
        self.assertEqual([(s.timestamp, s.luminance) for s in samples], [(0.0, 16.5), (0.1, 17.0), (0.2, 240.0)])

    def test_flat_interval_runs_to_last_sample(self):
        samples = parse_luminance(metadata_output([100.0] * 5 + [10.0] * 10))
        intervals = flat_intervals(samples, lambda y: y <= 25)
        self.assertEqual([(i.start, i.end) for i in intervals], [(0.5, 1.4)])

    def test_short_flat_run_is_ignored(self):
        samples = parse_luminance(metadata_output([100.0] * 5 + [250.0] * 3 + [100.0] * 5))
        self.assertEqual(flat_intervals(samples, lambda y: y >= 230), [])

    def test_settle_point_after_white_flash(self):
        cuts = luminance_cuts(parse_luminance(metadata_output(FLASH)))
        self.assertEqual([c.timestamp for c in cuts], [4.3])
        self.assertEqual(cuts[0].source, "luminance_from_white")
        self.assertEqual(cuts[0].confidence, 1.0)


class TestMergeEnhancedCuts(unittest.TestCase):
    def test_points_within_one_second_of_a_cut_are_dropped(self):
        merged = merge_enhanced_cuts(
            [cut(0.5), cut(5.0)],
            [cut(4.2, source="luminance_from_white"), cut(6.0, source="luminance_from_black"), cut(6.5, source="luminance_from_white")],
        )
        self.assertEqual([c.timestamp for c in merged], [0.5, 5.0, 6.0])
        self.assertEqual(merged[2].source, "luminance_from_black")

    def test_no_extra_points_keeps_cuts(self):
        cuts = [cut(0.5), cut(5.0)]
        self.assertEqual(merge_enhanced_cuts(cuts, []), cuts)


class TestSceneDetector(unittest.IsolatedAsyncioTestCase):
    async def test_roi_failure_falls_back_to_full_frame(self):
        detector = SceneDetector(thresholds=[0.05], roi_regions=["bottom"], min_scene_interval=1.0)

        async def fake_ffmpeg(args, timeout, label="ffmpeg", stall_timeout=None):
            if "crop=" in args[3]:
                raise SubprocessError("roi pass failed", 1)
            return ProcessResult(0, "", SHOWINFO)

        with patch("video_analyzer.batch.scene_detection.run_ffmpeg", AsyncMock(side_effect=fake_ffmpeg)):
            cuts = await detector.detect_cuts("in.mp4")

        self.assertEqual([c.timestamp for c in cuts], [0.5, 5.0, 12.9])

    async def test_roi_cuts_are_merged(self):
        detector = SceneDetector(thresholds=[0.05, 0.10], roi_regions=["bottom"], min_scene_interval=0.5)
        roi = "[x] pts_time:20.0\n"

        async def fake_ffmpeg(args, timeout, label="ffmpeg", stall_timeout=None):
            return ProcessResult(0, "", roi if "crop=" in args[3] else SHOWINFO)

        with patch("video_analyzer.batch.scene_detection.run_ffmpeg", AsyncMock(side_effect=fake_ffmpeg)) as ffmpeg:
            cuts = await detector.detect_cuts("in.mp4")

        self.assertEqual(ffmpeg.await_count, 3)
        self.assertEqual([c.timestamp for c in cuts], [0.5, 5.0, 12.9, 20.0])
        self.assertEqual(cuts[-1].source, "roi_bottom")
        self.assertEqual(cuts[0].confidence, 0.10)

    async def test_enhanced_mode_adds_luminance_cuts(self):
        detector = SceneDetector(thresholds=[0.05], mode="enhanced")
        standard = "[x] pts_time:0.5\n[x] pts_time:12.0\n"

        async def fake_ffmpeg(args, timeout, label="ffmpeg", stall_timeout=None):
            return ProcessResult(0, "", metadata_output(FLASH) if "signalstats" in args[3] else standard)

        with patch("video_analyzer.batch.scene_detection.run_ffmpeg", AsyncMock(side_effect=fake_ffmpeg)) as ffmpeg:
            cuts = await detector.detect_cuts("in.mp4")

        self.assertEqual(ffmpeg.await_count, 2)
        self.assertEqual([c.timestamp for c in cuts], [0.5, 4.3, 12.0])
        self.assertEqual(cuts[1].source, "luminance_from_white")

    async def test_enhanced_mode_keeps_standard_cuts_when_luminance_fails(self):
        detector = SceneDetector(thresholds=[0.05], mode="enhanced")

        async def fake_ffmpeg(args, timeout, label="ffmpeg", stall_timeout=None):
            if "signalstats" in args[3]:
                raise SubprocessError("signalstats failed", 1)
            return ProcessResult(0, "", SHOWINFO)

        with patch("video_analyzer.batch.scene_detection.run_ffmpeg", AsyncMock(side_effect=fake_ffmpeg)):
            cuts = await detector.detect_cuts("in.mp4")

        self.assertEqual([c.timestamp for c in cuts], [0.5, 5.0, 12.9])

    async def test_standard_mode_skips_luminance_pass(self):
        detector = SceneDetector(thresholds=[0.05])

        with patch("video_analyzer.batch.scene_detection.run_ffmpeg", AsyncMock(return_value=ProcessResult(0, "", SHOWINFO))) as ffmpeg:
            await detector.detect_cuts("in.mp4")

        self.assertEqual(ffmpeg.await_count, 1)

    def test_unknown_mode(self):
        with self.assertRaises(ValueError):
            SceneDetector(mode="transnet")

    def test_unknown_roi_region(self):
        with self.assertRaises(ValueError):
            SceneDetector(roi_regions=["left_ear"])


if __name__ == "__main__":
    unittest.main()
