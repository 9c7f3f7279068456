from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from video_analyzer.models.orm.base import Base


class ProcessingCheckpointRow(Base):
    """
    One row per upload. List/map fields are JSON text; timestamps are
    ISO-8601 strings (see base.to_iso).
    """
    __tablename__ = "processing_checkpoints"

    upload_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    current_step: Mapped[str] = mapped_column(String(32), nullable=False)

    video_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_audio_chunks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_scenes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    completed_audio_chunks: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    transcription_segments: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    scene_cuts: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    completed_ocr_scenes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    ocr_results: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(40), nullable=False)
    expires_at: Mapped[str] = mapped_column(String(40), nullable=False)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_processing_checkpoints_expires_at", "expires_at"),
        Index("ix_processing_checkpoints_user_id", "user_id"),
    )
