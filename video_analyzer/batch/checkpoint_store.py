"""
checkpoint_store.py – durable progress record for one upload.

The orchestrator consults the checkpoint before every step so a restarted
worker skips finished work:

    downloading → audio_extraction → transcription → scene_detection → ocr → excel_generation

A step runs when index(current_step) <= index(step). Steps never move
backwards, and a finished job has no checkpoint at all (it is deleted).

Two backends share the CheckpointStore interface:
  - DatabaseCheckpointStore: `processing_checkpoints` table (production)
  - MemoryCheckpointStore:   process dict, gone on restart (dev / tests)
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, delete as sa_delete

from video_analyzer.core.exceptions import CheckpointNotFoundError
from video_analyzer.models.checkpoint import (
    STEP_ORDER,
    ProcessingCheckpoint,
    ProcessingStep,
    SceneCut,
    TranscriptionSegment,
)
from video_analyzer.models.orm import ProcessingCheckpointRow
from video_analyzer.models.orm.base import from_iso, to_iso, utcnow
from video_analyzer.services.storage_service import ObjectStorage

logger = logging.getLogger("checkpoint_store")


def step_index(step) -> int:
    return STEP_ORDER.index(ProcessingStep(step))


def should_run_step(current_step, candidate_step) -> bool:
    """True when `candidate_step` has not been passed yet."""
    return step_index(current_step) <= step_index(candidate_step)


def is_expired(checkpoint: ProcessingCheckpoint, now: Optional[datetime] = None) -> bool:
    return checkpoint.expires_at <= (now or utcnow())


def _segment_key(seg: TranscriptionSegment):
    return (round(seg.timestamp, 3), seg.chunk_index, seg.text)


class CheckpointStore(ABC):
    def __init__(self, storage: Optional[ObjectStorage] = None, ttl_days: int = 7):
        self.storage = storage
        self.ttl_days = ttl_days

    # ---- backend primitives (raw, expired records included) ----

    @abstractmethod
    async def _read(self, upload_id: str) -> Optional[ProcessingCheckpoint]:
        ...

    @abstractmethod
    async def _write(self, checkpoint: ProcessingCheckpoint):
        ...

    @abstractmethod
    async def _remove(self, upload_id: str):
        ...

    @abstractmethod
    async def _list_expired(self, now: datetime) -> List[ProcessingCheckpoint]:
        ...

    # ---- public contract ----

    async def load(self, upload_id: str) -> Optional[ProcessingCheckpoint]:
        checkpoint = await self._read(upload_id)
        if checkpoint is None:
            return None
        if is_expired(checkpoint):
            logger.info("[CHECKPOINT] %s expired at %s, ignoring", upload_id, checkpoint.expires_at)
            return None
        return checkpoint

    async def save(
        self,
        checkpoint: ProcessingCheckpoint,
        increment_version: bool = True,
        increment_retry: bool = False,
    ) -> ProcessingCheckpoint:
        checkpoint.updated_at = utcnow()
        if increment_version:
            checkpoint.version += 1
        if increment_retry:
            checkpoint.retry_count += 1
        await self._write(checkpoint)
        logger.debug(
            "[CHECKPOINT] saved %s step=%s v%d",
            checkpoint.upload_id, checkpoint.current_step.value, checkpoint.version,
        )
        return checkpoint

    async def update(self, upload_id: str, **fields) -> ProcessingCheckpoint:
        checkpoint = await self.load(upload_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"Checkpoint not found: {upload_id}")
        for key, value in fields.items():
            if not hasattr(checkpoint, key):
                raise AttributeError(f"Unknown checkpoint field: {key}")
            setattr(checkpoint, key, value)
        return await self.save(checkpoint)

    async def delete(self, upload_id: str):
        """Remove the record and its intermediate blobs. Blob errors are logged only."""
        checkpoint = await self._read(upload_id)
        await self._remove(upload_id)
        if checkpoint is not None:
            await self._delete_blobs(checkpoint)
        logger.info("[CHECKPOINT] deleted %s", upload_id)

    async def get_or_create(self, upload_id: str, user_id: str) -> ProcessingCheckpoint:
        checkpoint = await self.load(upload_id)
        if checkpoint is not None:
            logger.info(
                "[CHECKPOINT] resuming %s at step=%s (retry_count=%d)",
                upload_id, checkpoint.current_step.value, checkpoint.retry_count,
            )
            return checkpoint
        checkpoint = ProcessingCheckpoint.new(upload_id, user_id, ttl_days=self.ttl_days)
        await self.save(checkpoint, increment_version=False)
        logger.info("[CHECKPOINT] created %s", upload_id)
        return checkpoint

    async def sweep_expired(self) -> int:
        expired = await self._list_expired(utcnow())
        for checkpoint in expired:
            await self._remove(checkpoint.upload_id)
            await self._delete_blobs(checkpoint)
        if expired:
            logger.info("[CHECKPOINT] swept %d expired checkpoints", len(expired))
        return len(expired)

    async def add_completed_audio_chunks(
        self,
        upload_id: str,
        chunk_indices: Iterable[int],
        segments: Iterable[TranscriptionSegment],
    ) -> ProcessingCheckpoint:
        checkpoint = await self.load(upload_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"Checkpoint not found: {upload_id}")

        checkpoint.completed_audio_chunks |= set(chunk_indices)
        seen = {_segment_key(s) for s in checkpoint.transcription_segments}
        for seg in segments:
            key = _segment_key(seg)
            if key not in seen:
                seen.add(key)
                checkpoint.transcription_segments.append(seg)
        checkpoint.transcription_segments.sort(key=lambda s: s.timestamp)
        return await self.save(checkpoint)

    async def add_completed_ocr_scenes(self, upload_id: str, results: Dict[int, str]) -> ProcessingCheckpoint:
        checkpoint = await self.load(upload_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"Checkpoint not found: {upload_id}")

        total = checkpoint.total_scenes
        for index, text in results.items():
            if index < 0 or (total is not None and index >= total):
                logger.warning("[CHECKPOINT] %s: dropping OCR result for out-of-range scene %d", upload_id, index)
                continue
            checkpoint.ocr_results[index] = text
            checkpoint.completed_ocr_scenes.add(index)
        return await self.save(checkpoint)

    async def _delete_blobs(self, checkpoint: ProcessingCheckpoint):
        if self.storage is None:
            return
        for key in checkpoint.blob_paths():
            await self.storage.delete_quietly(key)


class MemoryCheckpointStore(CheckpointStore):
    """Process-local store. Nothing survives a restart, so there is no resume in dev mode."""

    def __init__(self, storage: Optional[ObjectStorage] = None, ttl_days: int = 7):
        super().__init__(storage, ttl_days)
        self._records: Dict[str, ProcessingCheckpoint] = {}
        logger.warning("[CHECKPOINT] Using in-memory checkpoint store: resume after restart is disabled")

    async def _read(self, upload_id):
        record = self._records.get(upload_id)
        return record.model_copy(deep=True) if record is not None else None

    async def _write(self, checkpoint):
        self._records[checkpoint.upload_id] = checkpoint.model_copy(deep=True)

    async def _remove(self, upload_id):
        self._records.pop(upload_id, None)

    async def _list_expired(self, now):
        return [c.model_copy(deep=True) for c in self._records.values() if is_expired(c, now)]


class DatabaseCheckpointStore(CheckpointStore):
    """
    `processing_checkpoints` rows. Lists/maps are JSON text at this boundary
    only. Load/save errors propagate so the job fails loudly.
    """

    def __init__(self, db, storage: Optional[ObjectStorage] = None, ttl_days: int = 7):
        super().__init__(storage, ttl_days)
        self.db = db

    @staticmethod
    def to_row_values(checkpoint: ProcessingCheckpoint) -> dict:
        return {
            "upload_id": checkpoint.upload_id,
            "user_id": checkpoint.user_id,
            "current_step": checkpoint.current_step.value,
            "video_path": checkpoint.video_path,
            "audio_path": checkpoint.audio_path,
            "video_duration": checkpoint.video_duration,
            "total_audio_chunks": checkpoint.total_audio_chunks,
            "total_scenes": checkpoint.total_scenes,
            "completed_audio_chunks": json.dumps(sorted(checkpoint.completed_audio_chunks)),
            "transcription_segments": json.dumps(
                [s.model_dump() for s in checkpoint.transcription_segments], ensure_ascii=False
            ),
            "scene_cuts": json.dumps(
                [c.model_dump(exclude_none=True) for c in checkpoint.scene_cuts], ensure_ascii=False
            ),
            "completed_ocr_scenes": json.dumps(sorted(checkpoint.completed_ocr_scenes)),
            "ocr_results": json.dumps(
                {str(k): v for k, v in sorted(checkpoint.ocr_results.items())}, ensure_ascii=False
            ),
            "created_at": to_iso(checkpoint.created_at),
            "updated_at": to_iso(checkpoint.updated_at),
            "expires_at": to_iso(checkpoint.expires_at),
            "retry_count": checkpoint.retry_count,
            "version": checkpoint.version,
        }

    @staticmethod
    def from_row(row: ProcessingCheckpointRow) -> ProcessingCheckpoint:
        return ProcessingCheckpoint(
            upload_id=row.upload_id,
            user_id=row.user_id,
            current_step=ProcessingStep(row.current_step),
            video_path=row.video_path,
            audio_path=row.audio_path,
            video_duration=row.video_duration,
            total_audio_chunks=row.total_audio_chunks,
            total_scenes=row.total_scenes,
            completed_audio_chunks=set(json.loads(row.completed_audio_chunks or "[]")),
            transcription_segments=[
                TranscriptionSegment(**s) for s in json.loads(row.transcription_segments or "[]")
            ],
            scene_cuts=[SceneCut(**c) for c in json.loads(row.scene_cuts or "[]")],
            completed_ocr_scenes=set(json.loads(row.completed_ocr_scenes or "[]")),
            ocr_results={int(k): v for k, v in json.loads(row.ocr_results or "{}").items()},
            created_at=from_iso(row.created_at),
            updated_at=from_iso(row.updated_at),
            expires_at=from_iso(row.expires_at),
            retry_count=row.retry_count,
            version=row.version,
        )

    async def _read(self, upload_id):
        async with self.db.session() as session:
            row = await session.get(ProcessingCheckpointRow, upload_id)
            return self.from_row(row) if row is not None else None

    async def _write(self, checkpoint):
        values = self.to_row_values(checkpoint)
        async with self.db.session() as session:
            row = await session.get(ProcessingCheckpointRow, checkpoint.upload_id)
            if row is None:
                session.add(ProcessingCheckpointRow(**values))
                return
            if row.version > checkpoint.version:
                logger.warning(
                    "[CHECKPOINT] %s: overwriting newer version %d with %d (concurrent writer?)",
                    checkpoint.upload_id, row.version, checkpoint.version,
                )
            for key, value in values.items():
                setattr(row, key, value)

    async def _remove(self, upload_id):
        async with self.db.session() as session:
            await session.execute(
                sa_delete(ProcessingCheckpointRow).where(ProcessingCheckpointRow.upload_id == upload_id)
            )

    async def _list_expired(self, now):
        async with self.db.session() as session:
            result = await session.execute(
                select(ProcessingCheckpointRow).where(ProcessingCheckpointRow.expires_at <= to_iso(now))
            )
            return [self.from_row(row) for row in result.scalars().all()]
