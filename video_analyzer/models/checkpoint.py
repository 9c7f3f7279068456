"""
In-memory job state. Stores serialize these at their own boundary; everything
else works with the typed fields.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from video_analyzer.models.orm.base import utcnow


class ProcessingStep(str, Enum):
    DOWNLOADING = "downloading"
    AUDIO_EXTRACTION = "audio_extraction"
    TRANSCRIPTION = "transcription"
    SCENE_DETECTION = "scene_detection"
    OCR = "ocr"
    EXCEL_GENERATION = "excel_generation"


STEP_ORDER = [
    ProcessingStep.DOWNLOADING,
    ProcessingStep.AUDIO_EXTRACTION,
    ProcessingStep.TRANSCRIPTION,
    ProcessingStep.SCENE_DETECTION,
    ProcessingStep.OCR,
    ProcessingStep.EXCEL_GENERATION,
]


class TranscriptionSegment(BaseModel):
    timestamp: float
    duration: float
    text: str
    confidence: float = 0.95
    chunk_index: int = 0

    @property
    def end(self) -> float:
        return self.timestamp + self.duration


class SceneCut(BaseModel):
    timestamp: float
    confidence: float
    source: Optional[str] = None
    detection_reason: Optional[str] = None


class Scene(BaseModel):
    scene_number: int
    start_time: float
    end_time: float
    sample_time: float
    timecode: str
    screenshot_path: Optional[str] = None

    @property
    def index(self) -> int:
        return self.scene_number - 1

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class ProcessingCheckpoint(BaseModel):
    upload_id: str
    user_id: str
    current_step: ProcessingStep = ProcessingStep.DOWNLOADING

    video_path: Optional[str] = None
    audio_path: Optional[str] = None
    video_duration: Optional[float] = None
    total_audio_chunks: Optional[int] = None
    total_scenes: Optional[int] = None

    completed_audio_chunks: Set[int] = Field(default_factory=set)
    transcription_segments: List[TranscriptionSegment] = Field(default_factory=list)
    scene_cuts: List[SceneCut] = Field(default_factory=list)
    completed_ocr_scenes: Set[int] = Field(default_factory=set)
    ocr_results: Dict[int, str] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(default_factory=lambda: utcnow() + timedelta(days=7))

    retry_count: int = 0
    version: int = 1

    @classmethod
    def new(cls, upload_id: str, user_id: str, ttl_days: int = 7) -> "ProcessingCheckpoint":
        now = utcnow()
        return cls(
            upload_id=upload_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=ttl_days),
        )

    def blob_paths(self) -> List[str]:
        return [p for p in (self.video_path, self.audio_path) if p]


class Batch(BaseModel):
    upload_id: str
    batch_index: int
    total_batches: int
    start: int
    end: int

    @property
    def is_last(self) -> bool:
        return self.batch_index == self.total_batches - 1

    @property
    def scene_indices(self) -> range:
        return range(self.start, self.end)
