from dependency_injector import containers, providers

from video_analyzer.batch.batch_dispatcher import BatchDispatcher
from video_analyzer.batch.checkpoint_store import DatabaseCheckpointStore, MemoryCheckpointStore
from video_analyzer.batch.ocr_router import OcrRouter
from video_analyzer.batch.process_video import GracefulShutdown, VideoProcessor
from video_analyzer.batch.providers import build_ocr_providers, build_transcription_provider
from video_analyzer.batch.scene_detection import SceneDetector
from video_analyzer.batch.transcription_pipeline import TranscriptionPipeline
from video_analyzer.batch.vad import PreChunkConfig, VadConfig
from video_analyzer.core.config import configs
from video_analyzer.core.db import Database
from video_analyzer.services.queue_service import AzureBatchQueue, InProcessBatchQueue
from video_analyzer.services.status_service import DatabaseStatusSink, LoggingStatusSink
from video_analyzer.services.storage_service import AzureBlobStorage, LocalObjectStorage


class Container(containers.DeclarativeContainer):
    # Override with TestConfigs() (or any Configs) before resolving anything
    settings = providers.Object(configs)

    db = providers.Singleton(Database, db_url=settings.provided.DATABASE_URI, echo=settings.provided.DB_ECHO)

    storage = providers.Selector(
        settings.provided.STORAGE_BACKEND,
        azure=providers.Singleton(
            AzureBlobStorage,
            connection_string=settings.provided.AZURE_STORAGE_CONNECTION_STRING,
            container=settings.provided.AZURE_BLOB_CONTAINER,
            account_name=settings.provided.AZURE_STORAGE_ACCOUNT_NAME,
        ),
        local=providers.Singleton(LocalObjectStorage, root=settings.provided.LOCAL_STORAGE_ROOT),
    )

    checkpoint_store = providers.Selector(
        settings.provided.CHECKPOINT_BACKEND,
        database=providers.Singleton(
            DatabaseCheckpointStore, db=db, storage=storage, ttl_days=settings.provided.CHECKPOINT_TTL_DAYS
        ),
        memory=providers.Singleton(
            MemoryCheckpointStore, storage=storage, ttl_days=settings.provided.CHECKPOINT_TTL_DAYS
        ),
    )

    status_sink = providers.Selector(
        settings.provided.STATUS_BACKEND,
        database=providers.Singleton(DatabaseStatusSink, db=db),
        logging=providers.Singleton(LoggingStatusSink),
    )

    # dev mode: one in-process queue carries both job and batch messages
    inprocess_queue = providers.Singleton(InProcessBatchQueue)

    job_queue = providers.Selector(
        settings.provided.QUEUE_BACKEND,
        azure=providers.Singleton(
            AzureBatchQueue,
            connection_string=settings.provided.AZURE_STORAGE_CONNECTION_STRING,
            queue_name=settings.provided.AZURE_QUEUE_NAME,
            account_name=settings.provided.AZURE_STORAGE_ACCOUNT_NAME,
        ),
        inprocess=inprocess_queue,
    )

    batch_queue = providers.Selector(
        settings.provided.QUEUE_BACKEND,
        azure=providers.Singleton(
            AzureBatchQueue,
            connection_string=settings.provided.AZURE_STORAGE_CONNECTION_STRING,
            queue_name=settings.provided.AZURE_BATCH_QUEUE_NAME,
            account_name=settings.provided.AZURE_STORAGE_ACCOUNT_NAME,
        ),
        inprocess=inprocess_queue,
    )

    shutdown = providers.Singleton(
        GracefulShutdown,
        checkpoint_store=checkpoint_store,
        flush_timeout=settings.provided.SHUTDOWN_FLUSH_TIMEOUT,
    )

    ocr_providers = providers.Singleton(build_ocr_providers, settings)
    transcription_provider = providers.Singleton(build_transcription_provider, settings)

    ocr_router = providers.Singleton(
        OcrRouter,
        providers=ocr_providers,
        strategy=settings.provided.OCR_STRATEGY,
        max_parallel=settings.provided.OCR_MAX_PARALLEL,
        long_video_threshold=settings.provided.LONG_VIDEO_THRESHOLD,
    )

    vad_config = providers.Factory(
        VadConfig,
        max_chunk_duration=settings.provided.VAD_MAX_CHUNK_DURATION,
        min_speech_duration=settings.provided.VAD_MIN_SPEECH_DURATION,
        sensitivity=settings.provided.VAD_SENSITIVITY,
    )
    prechunk_config = providers.Factory(
        PreChunkConfig,
        enabled=settings.provided.VAD_PRECHUNK_ENABLED,
        chunk_duration=settings.provided.VAD_PRECHUNK_DURATION,
        overlap=settings.provided.VAD_PRECHUNK_OVERLAP,
        min_duration=settings.provided.VAD_PRECHUNK_MIN_DURATION,
    )

    transcription = providers.Singleton(
        TranscriptionPipeline,
        provider=transcription_provider,
        checkpoint_store=checkpoint_store,
        vad_config=vad_config,
        prechunk_config=prechunk_config,
        concurrency=settings.provided.WHISPER_CONCURRENCY,
        checkpoint_interval=settings.provided.WHISPER_CHECKPOINT_INTERVAL,
        fallback_chunk_duration=settings.provided.VAD_FALLBACK_CHUNK_DURATION,
        shutdown=shutdown,
    )

    scene_detector = providers.Singleton(
        SceneDetector,
        thresholds=settings.provided.SCENE_THRESHOLDS,
        roi_regions=settings.provided.SCENE_ROI_REGIONS,
        merge_epsilon=settings.provided.SCENE_MERGE_EPSILON,
        min_scene_interval=settings.provided.SCENE_MIN_INTERVAL,
        min_scene_duration=settings.provided.SCENE_MIN_DURATION,
        sample_ratio=settings.provided.SCENE_SAMPLE_RATIO,
        mode=settings.provided.SCENE_DETECTION_MODE,
    )

    dispatcher = providers.Singleton(
        BatchDispatcher,
        checkpoint_store=checkpoint_store,
        router=ocr_router,
        queue=batch_queue,
        status_sink=status_sink,
        batch_size=settings.provided.OCR_BATCH_SIZE,
        frame_concurrency=settings.provided.OCR_FRAME_CONCURRENCY,
        max_batch_retries=settings.provided.OCR_MAX_BATCH_RETRIES,
        chain_delay=settings.provided.OCR_BATCH_CHAIN_DELAY,
        shutdown=shutdown,
    )

    processor = providers.Singleton(
        VideoProcessor,
        checkpoint_store=checkpoint_store,
        storage=storage,
        status_sink=status_sink,
        scene_detector=scene_detector,
        transcription=transcription,
        dispatcher=dispatcher,
        work_root=settings.provided.WORK_DIR,
        batch_mode=settings.provided.OCR_BATCH_MODE,
        heartbeat_interval=settings.provided.HEARTBEAT_INTERVAL,
        progress_threshold=settings.provided.PROGRESS_THRESHOLD,
        narration_min_confidence=settings.provided.NARRATION_MIN_CONFIDENCE,
        audio_preprocess=settings.provided.AUDIO_PREPROCESS,
        download_chunk_size=settings.provided.DOWNLOAD_CHUNK_SIZE,
        download_concurrency=settings.provided.DOWNLOAD_CONCURRENCY,
        shutdown=shutdown,
    )
