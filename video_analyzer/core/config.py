import os
from typing import List, Dict

from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from pydantic import computed_field

load_dotenv()


class Configs(BaseSettings):
    # base
    ENV: str = "dev"
    PROJECT_NAME: str = "video-analyzer-worker"
    ENV_DATABASE_MAPPER: Dict[str, str] = {
        "prod": "video_analyzer",
        "stage": "stage_video_analyzer",
        "dev": "dev_video_analyzer",
        "test": "test_video_analyzer",
    }
    DB_ENGINE_MAPPER: Dict[str, str] = {
        "postgresql": "postgresql+asyncpg",
        "sqlite": "sqlite+aiosqlite",
    }

    PROJECT_ROOT: str = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    WORK_DIR: str = "/tmp/video-analyzer"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    # database
    DB: str = "postgresql"
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: str = "5432"
    DB_ECHO: bool = False

    DATABASE_URI_FORMAT: str = "{db_engine}://{user}:{password}@{host}:{port}/{database}"

    # Support both DATABASE_URL (from env) and DATABASE_URI (constructed)
    DATABASE_URL: str = ""

    # checkpoints
    CHECKPOINT_BACKEND: str = "database"  # "database" | "memory"
    CHECKPOINT_TTL_DAYS: int = 7
    CHECKPOINT_SWEEP_INTERVAL: int = 60 * 60  # 1 hour

    # object storage
    STORAGE_BACKEND: str = "azure"  # "azure" | "local"
    AZURE_STORAGE_CONNECTION_STRING: str = ""
    AZURE_STORAGE_ACCOUNT_NAME: str = ""
    AZURE_BLOB_CONTAINER: str = "videos"
    LOCAL_STORAGE_ROOT: str = "storage"
    DOWNLOAD_CHUNK_SIZE: int = 10 * 1024 * 1024  # 10MB
    DOWNLOAD_CONCURRENCY: int = 4

    # queues
    QUEUE_BACKEND: str = "azure"  # "azure" | "inprocess"
    AZURE_QUEUE_NAME: str = "video-jobs"
    AZURE_BATCH_QUEUE_NAME: str = "video-ocr-batches"
    QUEUE_VISIBILITY_TIMEOUT: int = 4 * 60 * 60  # 4 hours
    QUEUE_POLL_INTERVAL: int = 5
    QUEUE_VISIBILITY_RENEW_INTERVAL: int = 30 * 60  # 30 minutes
    WORKER_MAX_CONCURRENT: int = 1

    # OCR providers (a provider is registered only when its key is set)
    OPENAI_API_KEY: str = ""
    OPENAI_OCR_MODEL: str = "gpt-4o-mini"
    AZURE_OPENAI_KEY: str = ""
    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_API_VERSION: str = "2024-10-21"
    AZURE_OCR_DEPLOYMENT: str = "gpt-4o-mini"
    GLM_API_KEY: str = ""
    GLM_BASE_URL: str = "https://open.bigmodel.cn/api/paas/v4/"
    GLM_OCR_MODEL: str = "glm-4v-flash"
    OCR_STRATEGY: str = "load_balanced"  # "priority" | "round_robin" | "load_balanced"
    OCR_MAX_PARALLEL: int = 30
    OCR_MAX_CONCURRENT_PER_PROVIDER: int = 10
    OCR_REQUESTS_PER_MINUTE: int = 60
    LONG_VIDEO_THRESHOLD: float = 3600.0

    # OCR batches
    OCR_BATCH_MODE: str = "inline"  # "inline" | "queue"
    OCR_BATCH_SIZE: int = 50
    OCR_FRAME_CONCURRENCY: int = 4
    OCR_MAX_BATCH_RETRIES: int = 3
    OCR_BATCH_CHAIN_DELAY: int = 2

    # transcription
    WHISPER_ENGINE: str = "azure"  # "azure" | "openai" | "local"
    WHISPER_MODEL: str = "whisper-1"
    WHISPER_DEPLOYMENT: str = "whisper"
    WHISPER_API_VERSION: str = "2024-06-01"
    WHISPER_LANGUAGE: str = "ja"
    WHISPER_MODEL_SIZE: str = "large-v3"
    WHISPER_DEVICE: str = "auto"
    WHISPER_COMPUTE_TYPE: str = "auto"
    WHISPER_CONCURRENCY: int = 5
    WHISPER_REQUESTS_PER_MINUTE: int = 50
    WHISPER_CHECKPOINT_INTERVAL: int = 10
    WHISPER_MAX_RETRIES: int = 3

    # voice activity detection
    VAD_MAX_CHUNK_DURATION: float = 10.0
    VAD_MIN_SPEECH_DURATION: float = 0.10
    VAD_SENSITIVITY: float = 0.3
    VAD_PRECHUNK_ENABLED: bool = True
    VAD_PRECHUNK_DURATION: float = 300.0
    VAD_PRECHUNK_OVERLAP: float = 1.0
    VAD_PRECHUNK_MIN_DURATION: float = 600.0
    VAD_FALLBACK_CHUNK_DURATION: float = 30.0
    AUDIO_PREPROCESS: bool = True

    # scene detection
    SCENE_THRESHOLDS: List[float] = [0.03, 0.05, 0.10]
    SCENE_ROI_REGIONS: List[str] = []
    SCENE_MIN_DURATION: float = 0.5
    SCENE_MERGE_EPSILON: float = 0.1
    SCENE_MIN_INTERVAL: float = 1.0
    SCENE_SAMPLE_RATIO: float = 0.5
    SCENE_DETECTION_MODE: str = "standard"  # "standard" | "enhanced"

    # job
    STATUS_BACKEND: str = "database"  # "database" | "logging"
    HEARTBEAT_INTERVAL: int = 60
    PROGRESS_THRESHOLD: int = 5
    NARRATION_MIN_CONFIDENCE: float = 0.3
    SHUTDOWN_FLUSH_TIMEOUT: int = 20

    @computed_field
    @property
    def DB_ENGINE(self) -> str:
        return self.DB_ENGINE_MAPPER.get(self.DB, "postgresql+asyncpg")

    @computed_field
    @property
    def DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.DB == "sqlite":
            return f"{self.DB_ENGINE}:///{self.ENV_DATABASE_MAPPER.get(self.ENV, 'dev_video_analyzer')}.db"
        return self.DATABASE_URI_FORMAT.format(
            db_engine=self.DB_ENGINE,
            user=self.DB_USER,
            password=self.DB_PASSWORD,
            host=self.DB_HOST,
            port=self.DB_PORT,
            database=self.ENV_DATABASE_MAPPER.get(self.ENV, "dev_video_analyzer"),
        )

    class Config:
        case_sensitive = True


class TestConfigs(Configs):
    ENV: str = "test"
    DB: str = "sqlite"
    CHECKPOINT_BACKEND: str = "memory"
    STORAGE_BACKEND: str = "local"
    QUEUE_BACKEND: str = "inprocess"
    STATUS_BACKEND: str = "logging"


configs = Configs()
