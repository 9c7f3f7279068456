# video_analyzer/models/orm/__init__.py
from .processing_checkpoint import ProcessingCheckpointRow
from .upload_status import UploadStatus
from .base import Base
