# report_pipeline.py
"""
Excel report: one row per scene (screenshot, on-screen text, narration) and a
Summary sheet.

OCR text is cleaned before it is written:
  1. persistent overlays (logos, watermarks) are removed: lines found in at
     least `overlay_threshold(n)` of all scenes
  2. consecutive repeats are blanked unless the text has stayed on screen for
     LONG_DISPLAY_THRESHOLD seconds or more
"""
import io
import os
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.drawing.image import Image as XLImage
from openpyxl.styles import Alignment, Font, PatternFill
from PIL import Image

from video_analyzer.models.checkpoint import Scene, TranscriptionSegment

logger = logging.getLogger("report_pipeline")

NO_TEXT = "(no text)"
NO_NARRATION = "(no narration)"
LONG_DISPLAY_THRESHOLD = 5.0

THUMB_WIDTH = 320
THUMB_HEIGHT = 180

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill("solid", fgColor="4472C4")
WRAP = Alignment(wrap_text=True, vertical="top")


class WarningCollector:
    """Non-fatal problems met while processing, shown in the report summary."""

    def __init__(self):
        self._warnings: List[str] = []

    def add(self, message: str):
        self._warnings.append(message)
        logger.warning("[WARNING] %s", message)

    def add_if(self, condition: bool, message: str):
        if condition:
            self.add(message)

    @property
    def warnings(self) -> List[str]:
        return list(self._warnings)

    def has_warnings(self) -> bool:
        return bool(self._warnings)

    def __len__(self):
        return len(self._warnings)


@dataclass
class ReportRow:
    scene_number: int
    timecode: str
    start_time: float
    end_time: float
    screenshot_path: Optional[str]
    ocr_text: str
    narration: str


@dataclass
class ReportSummary:
    video_duration: float = 0.0
    width: int = 0
    height: int = 0
    detection: Dict[str, object] = field(default_factory=dict)
    transcription: Dict[str, object] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


# =========================
# TEXT CLEANUP
# =========================

def _lines(text: str) -> List[str]:
    return [line.strip() for line in (text or "").split("\n") if line.strip()]


def overlay_threshold(total_scenes: int) -> float:
    if total_scenes < 20:
        return 0.8
    if total_scenes < 50:
        return 0.7
    if total_scenes < 100:
        return 0.6
    return 0.5


def filter_persistent_overlays(texts: Sequence[str], threshold: Optional[float] = None, min_scenes: int = 3) -> List[str]:
    total = len(texts)
    if total < min_scenes:
        return list(texts)
    if threshold is None:
        threshold = overlay_threshold(total)

    frequency = Counter()
    for text in texts:
        frequency.update(set(_lines(text)))

    persistent = {line for line, count in frequency.items() if count >= total * threshold}
    if persistent:
        logger.info(
            "[REPORT] Removing %d persistent overlay lines (>= %.0f%% of %d scenes)",
            len(persistent), threshold * 100, total,
        )
    return ["\n".join(l for l in _lines(text) if l not in persistent) for text in texts]


def remove_consecutive_duplicates(scenes: Sequence[Scene], texts: Sequence[str]) -> List[str]:
    out: List[str] = []
    previous = ""
    first_seen_at = 0.0
    hidden = 0

    for scene, text in zip(scenes, texts):
        normalized = "\n".join(_lines(text))
        if normalized and normalized == previous:
            if scene.end_time - first_seen_at >= LONG_DISPLAY_THRESHOLD:
                out.append(normalized)
            else:
                out.append("")
                hidden += 1
            continue

        previous = normalized
        first_seen_at = scene.start_time if normalized else 0.0
        out.append(normalized)

    if hidden:
        logger.info("[REPORT] Hid %d consecutive duplicate OCR texts", hidden)
    return out


def narration_for_scene(
    scene: Scene,
    segments: Sequence[TranscriptionSegment],
    min_confidence: float = 0.3,
) -> str:
    """Text of every segment overlapping [start, end), low-confidence segments excluded."""
    parts = [
        seg.text.strip()
        for seg in segments
        if seg.confidence >= min_confidence
        and seg.timestamp < scene.end_time
        and seg.end > scene.start_time
        and seg.text.strip()
    ]
    return " ".join(parts)


def build_rows(
    scenes: Sequence[Scene],
    ocr_results: Dict[int, str],
    segments: Sequence[TranscriptionSegment],
    min_confidence: float = 0.3,
) -> List[ReportRow]:
    raw = [ocr_results.get(scene.index, "") for scene in scenes]
    cleaned = remove_consecutive_duplicates(scenes, filter_persistent_overlays(raw))

    rows = []
    for scene, text in zip(scenes, cleaned):
        narration = narration_for_scene(scene, segments, min_confidence)
        rows.append(ReportRow(
            scene_number=scene.scene_number,
            timecode=scene.timecode,
            start_time=scene.start_time,
            end_time=scene.end_time,
            screenshot_path=scene.screenshot_path,
            ocr_text=text or NO_TEXT,
            narration=narration or NO_NARRATION,
        ))
    return rows


# =========================
# WORKBOOK
# =========================

def _thumbnail(path: str) -> Optional[XLImage]:
    if not path or not os.path.exists(path):
        return None
    try:
        with Image.open(path) as img:
            img = img.convert("RGB")
            img.thumbnail((THUMB_WIDTH, THUMB_HEIGHT))
            buf = io.BytesIO()
            img.save(buf, format="PNG")
    except OSError as e:
        logger.warning("[REPORT] Could not read screenshot %s: %s", path, e)
        return None
    buf.seek(0)
    return XLImage(buf)


def _write_header(ws, headers):
    ws.append(headers)
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")
    ws.freeze_panes = "A2"


def _write_scenes_sheet(ws, rows: Sequence[ReportRow]):
    _write_header(ws, ["Scene #", "Timecode", "Screenshot", "On-screen Text", "Narration"])
    ws.column_dimensions["A"].width = 9
    ws.column_dimensions["B"].width = 11
    ws.column_dimensions["C"].width = THUMB_WIDTH / 7
    ws.column_dimensions["D"].width = 50
    ws.column_dimensions["E"].width = 60

    for excel_row, row in enumerate(rows, start=2):
        ws.cell(row=excel_row, column=1, value=row.scene_number)
        ws.cell(row=excel_row, column=2, value=row.timecode)
        ws.cell(row=excel_row, column=4, value=row.ocr_text).alignment = WRAP
        ws.cell(row=excel_row, column=5, value=row.narration).alignment = WRAP

        image = _thumbnail(row.screenshot_path)
        if image is not None:
            ws.add_image(image, f"C{excel_row}")
            ws.row_dimensions[excel_row].height = THUMB_HEIGHT * 0.75


def _pct(part: int, total: int) -> str:
    return f"{part / total * 100:.1f}%" if total else "0.0%"


def _write_summary_sheet(ws, rows: Sequence[ReportRow], summary: ReportSummary):
    total = len(rows)
    with_text = sum(1 for r in rows if r.ocr_text != NO_TEXT)
    with_narration = sum(1 for r in rows if r.narration != NO_NARRATION)

    ws.column_dimensions["A"].width = 32
    ws.column_dimensions["B"].width = 60

    def section(title):
        ws.append([])
        ws.append([title])
        ws.cell(row=ws.max_row, column=1).font = Font(bold=True)

    ws.append(["Summary"])
    ws.cell(row=1, column=1).font = Font(bold=True, size=14)
    ws.append(["Total Scenes", total])
    ws.append(["Scenes with OCR Text", with_text])
    ws.append(["Scenes with Narration", with_narration])
    ws.append(["OCR Detection Rate", _pct(with_text, total)])
    ws.append(["Narration Coverage Rate", _pct(with_narration, total)])

    section("Video")
    ws.append(["Resolution", f"{summary.width}x{summary.height}" if summary.width else "unknown"])
    ws.append(["Aspect Ratio", f"{summary.width / summary.height:.2f}:1" if summary.height else "unknown"])
    ws.append(["Duration (s)", round(summary.video_duration, 1)])

    if summary.detection:
        section("Detection Parameters")
        for key, value in summary.detection.items():
            ws.append([key, str(value)])

    if summary.transcription:
        section("Transcription")
        for key, value in summary.transcription.items():
            ws.append([key, str(value)])

    section("Processing Warnings")
    if summary.warnings:
        for warning in summary.warnings:
            ws.append(["", warning])
            ws.cell(row=ws.max_row, column=2).alignment = WRAP
    else:
        ws.append(["", "None"])


def generate_report(rows: Sequence[ReportRow], summary: ReportSummary, out_path: str) -> str:
    """Blocking: run it in an executor from async code."""
    wb = Workbook()
    scenes_ws = wb.active
    scenes_ws.title = "Scenes"
    _write_scenes_sheet(scenes_ws, rows)
    _write_summary_sheet(wb.create_sheet("Summary"), rows, summary)

    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    wb.save(out_path)
    logger.info("[REPORT] Wrote %s (%d scenes)", out_path, len(rows))
    return out_path
