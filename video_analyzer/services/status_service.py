"""
Externally visible job status. Every call is fire-and-forget: a failing status
write is logged and never interrupts processing.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from video_analyzer.models.orm import UploadStatus
from video_analyzer.models.orm.base import utcnow

logger = logging.getLogger("status_service")

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


def calculate_progress(stage: str) -> int:
    """
    Progress percentage at the start of a processing stage.

    Examples:
        >>> calculate_progress('downloading')
        0
        >>> calculate_progress('ocr')
        25
        >>> calculate_progress('completed')
        100
    """
    stage_map = {
        "downloading": 0,
        "audio_extraction": 5,
        "transcription": 10,
        "scene_detection": 10,
        "ocr": 25,
        "excel_generation": 90,
        "completed": 100,
        "error": -1,
    }
    return stage_map.get(stage, 0)


def get_status_message(stage: str) -> str:
    """
    User-friendly Japanese message for a processing stage.

    Examples:
        >>> get_status_message('transcription')
        '音声書き起こし中...'
    """
    message_map = {
        "downloading": "動画をダウンロード中...",
        "audio_extraction": "音声を抽出中...",
        "transcription": "音声書き起こし中...",
        "scene_detection": "シーンを検出中...",
        "ocr": "画面テキストを読み取り中...",
        "excel_generation": "レポートを作成中...",
        "completed": "解析完了",
        "error": "エラーが発生しました",
    }
    return message_map.get(stage, "処理中...")


class StatusSink(ABC):
    @abstractmethod
    async def set_progress(self, upload_id: str, percent: int, stage: str, message: Optional[str] = None):
        ...

    @abstractmethod
    async def heartbeat(self, upload_id: str):
        ...

    @abstractmethod
    async def mark_completed(self, upload_id: str, result_key: str):
        ...

    @abstractmethod
    async def mark_failed(self, upload_id: str, message: str):
        ...


class DatabaseStatusSink(StatusSink):
    """Upserts one `upload_status` row per upload."""

    def __init__(self, db):
        self.db = db

    async def _upsert(self, upload_id: str, **fields):
        try:
            async with self.db.session() as session:
                row = await session.get(UploadStatus, upload_id)
                if row is None:
                    row = UploadStatus(upload_id=upload_id)
                    session.add(row)
                for key, value in fields.items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("[STATUS] Update failed for %s (non-fatal): %s", upload_id, e)

    async def set_progress(self, upload_id, percent, stage, message=None):
        await self._upsert(
            upload_id,
            status=STATUS_PROCESSING,
            progress=max(0, min(100, int(percent))),
            stage=stage,
            message=message or get_status_message(stage),
        )

    async def heartbeat(self, upload_id):
        await self._upsert(upload_id)

    async def mark_completed(self, upload_id, result_key):
        await self._upsert(
            upload_id,
            status=STATUS_COMPLETED,
            progress=100,
            stage="completed",
            message=get_status_message("completed"),
            result_key=result_key,
        )

    async def mark_failed(self, upload_id, message):
        await self._upsert(
            upload_id,
            status=STATUS_ERROR,
            stage="error",
            message=get_status_message("error"),
            error_message=message,
        )


class LoggingStatusSink(StatusSink):
    """Dev-mode sink: status only goes to the log."""

    async def set_progress(self, upload_id, percent, stage, message=None):
        logger.info("[STATUS] %s %d%% %s %s", upload_id, percent, stage, message or "")

    async def heartbeat(self, upload_id):
        logger.debug("[STATUS] %s heartbeat", upload_id)

    async def mark_completed(self, upload_id, result_key):
        logger.info("[STATUS] %s completed -> %s", upload_id, result_key)

    async def mark_failed(self, upload_id, message):
        logger.info("[STATUS] %s failed: %s", upload_id, message)
