import os
import shutil
import tempfile
import unittest

from openpyxl import load_workbook
from PIL import Image

from video_analyzer.batch.report_pipeline import (
    NO_NARRATION,
    NO_TEXT,
    ReportRow,
    ReportSummary,
    WarningCollector,
    build_rows,
    filter_persistent_overlays,
    generate_report,
    narration_for_scene,
    overlay_threshold,
    remove_consecutive_duplicates,
)
from video_analyzer.models.checkpoint import Scene, TranscriptionSegment


def scene(number, start, end):
    return Scene(scene_number=number, start_time=start, end_time=end, sample_time=(start + end) / 2, timecode="00:00:00")


def seg(start, duration, text, confidence=0.9):
    return TranscriptionSegment(timestamp=start, duration=duration, text=text, confidence=confidence)


class TestOverlayFilter(unittest.TestCase):
    def test_threshold_by_scene_count(self):
        self.assertEqual(overlay_threshold(10), 0.8)
        self.assertEqual(overlay_threshold(20), 0.7)
        self.assertEqual(overlay_threshold(50), 0.6)
        self.assertEqual(overlay_threshold(100), 0.5)

    def test_watermark_removed(self):
        texts = [f"LOGO\nline {i}" for i in range(10)]
        cleaned = filter_persistent_overlays(texts)
        self.assertEqual(cleaned[3], "line 3")

    def test_line_below_threshold_kept(self):
        texts = ["LOGO\na"] * 7 + ["b", "c", "d"]
        cleaned = filter_persistent_overlays(texts)
        self.assertEqual(cleaned[0], "LOGO\na")

    def test_too_few_scenes(self):
        texts = ["LOGO", "LOGO"]
        self.assertEqual(filter_persistent_overlays(texts), texts)


class TestConsecutiveDuplicates(unittest.TestCase):
    def test_short_repeat_hidden(self):
        scenes = [scene(1, 0, 2), scene(2, 2, 4), scene(3, 4, 6)]
        out = remove_consecutive_duplicates(scenes, ["SALE", "SALE", "NEW"])
        self.assertEqual(out, ["SALE", "", "NEW"])

    def test_long_display_kept(self):
        scenes = [scene(1, 0, 3), scene(2, 3, 6)]
        out = remove_consecutive_duplicates(scenes, ["SALE", "SALE"])
        self.assertEqual(out, ["SALE", "SALE"])

    def test_empty_text_never_counts_as_repeat(self):
        scenes = [scene(1, 0, 1), scene(2, 1, 2)]
        self.assertEqual(remove_consecutive_duplicates(scenes, ["", ""]), ["", ""])


class TestNarration(unittest.TestCase):
    def test_overlapping_segments(self):
        segments = [seg(0, 2, "before"), seg(9, 2, "across"), seg(12, 1, "inside"), seg(20, 1, "after")]
        self.assertEqual(narration_for_scene(scene(1, 10, 20), segments), "across inside")

    def test_low_confidence_excluded(self):
        segments = [seg(11, 1, "mumble", confidence=0.1), seg(12, 1, "clear")]
        self.assertEqual(narration_for_scene(scene(1, 10, 20), segments), "clear")

    def test_segment_ending_at_start_excluded(self):
        self.assertEqual(narration_for_scene(scene(1, 10, 20), [seg(8, 2, "earlier")]), "")


class TestReport(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_rows_use_placeholders(self):
        scenes = [scene(1, 0, 5), scene(2, 5, 10)]
        rows = build_rows(scenes, {0: "Hello"}, [seg(6, 1, "narrated")])

        self.assertEqual(rows[0].ocr_text, "Hello")
        self.assertEqual(rows[0].narration, NO_NARRATION)
        self.assertEqual(rows[1].ocr_text, NO_TEXT)
        self.assertEqual(rows[1].narration, "narrated")

    def test_workbook(self):
        shot = os.path.join(self.tmp, "scene-0001.png")
        Image.new("RGB", (640, 360), "blue").save(shot)
        rows = [
            ReportRow(1, "00:00:00", 0, 5, shot, "Hello", NO_NARRATION),
            ReportRow(2, "00:00:05", 5, 10, os.path.join(self.tmp, "missing.png"), NO_TEXT, "narrated"),
        ]
        summary = ReportSummary(
            video_duration=10.0, width=1280, height=720,
            detection={"Thresholds": "0.03, 0.05"},
            warnings=["1 of 2 audio chunks could not be transcribed."],
        )

        out = generate_report(rows, summary, os.path.join(self.tmp, "out", "report.xlsx"))

        wb = load_workbook(out)
        self.assertEqual(wb.sheetnames, ["Scenes", "Summary"])
        scenes_ws = wb["Scenes"]
        self.assertEqual(scenes_ws["A1"].value, "Scene #")
        self.assertEqual(scenes_ws["D2"].value, "Hello")
        self.assertEqual(scenes_ws["E3"].value, "narrated")
        self.assertEqual(len(scenes_ws._images), 1)

        values = {row[0]: row[1] for row in wb["Summary"].iter_rows(values_only=True) if row and row[0]}
        self.assertEqual(values["Total Scenes"], 2)
        self.assertEqual(values["OCR Detection Rate"], "50.0%")
        self.assertEqual(values["Resolution"], "1280x720")
        self.assertEqual(values["Thresholds"], "0.03, 0.05")


class TestWarningCollector(unittest.TestCase):
    def test_collects(self):
        warnings = WarningCollector()
        warnings.add_if(False, "skipped")
        warnings.add("kept")
        self.assertEqual(warnings.warnings, ["kept"])
        self.assertTrue(warnings.has_warnings())
        self.assertEqual(len(warnings), 1)


if __name__ == "__main__":
    unittest.main()
