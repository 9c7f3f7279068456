import os
import math
import asyncio
import logging
import threading

from openai import AsyncAzureOpenAI, AsyncOpenAI

from video_analyzer.batch.providers.base import CapabilityProvider, ProviderResult, RawSegment
from video_analyzer.batch.rate_limiter import RateLimiter

logger = logging.getLogger("whisper_providers")

DEFAULT_SEGMENT_CONFIDENCE = 0.95


def logprob_to_confidence(avg_logprob) -> float:
    if avg_logprob is None:
        return DEFAULT_SEGMENT_CONFIDENCE
    return max(0.0, min(1.0, math.exp(avg_logprob)))


def _read_bytes(path):
    with open(path, "rb") as f:
        return f.read()


class WhisperApiProvider(CapabilityProvider):
    """Whisper over the OpenAI / Azure OpenAI transcription endpoint (verbose_json)."""

    def __init__(self, name, client, model="whisper-1", language="ja", priority=1, limiter=None):
        super().__init__(name, priority=priority, limiter=limiter)
        self.client = client
        self.model = model
        self.language = language

    async def _call(self, audio_path: str) -> ProviderResult:
        if not os.path.exists(audio_path):
            raise FileNotFoundError(audio_path)

        loop = asyncio.get_running_loop()
        audio = await loop.run_in_executor(None, _read_bytes, audio_path)
        resp = await self.client.audio.transcriptions.create(
            model=self.model,
            file=(os.path.basename(audio_path), audio),
            response_format="verbose_json",
            language=self.language,
            temperature=0,
        )

        segments = []
        for seg in getattr(resp, "segments", None) or []:
            text = (seg.text or "").strip()
            if not text:
                continue
            segments.append(RawSegment(
                start=seg.start,
                end=seg.end,
                text=text,
                confidence=logprob_to_confidence(getattr(seg, "avg_logprob", None)),
            ))

        full_text = (getattr(resp, "text", "") or "").strip()
        if not segments and full_text:
            duration = getattr(resp, "duration", None) or 0.0
            segments.append(RawSegment(start=0.0, end=float(duration), text=full_text))

        return ProviderResult(text=full_text, confidence=DEFAULT_SEGMENT_CONFIDENCE, segments=segments)


class LocalWhisperProvider(CapabilityProvider):
    """
    faster-whisper on this machine. The model is loaded on first use and
    inference is serialized (CTranslate2 is not thread-safe).
    """

    def __init__(self, model_size="large-v3", device="auto", compute_type="auto", language="ja",
                 beam_size=5, limiter=None):
        super().__init__("local-whisper", priority=1, limiter=limiter)
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.beam_size = beam_size
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        if self._model is not None:
            return self._model

        from faster_whisper import WhisperModel
        import ctranslate2

        device = self.device
        if device == "auto":
            device = "cuda" if ctranslate2.get_cuda_device_count() > 0 else "cpu"

        compute_type = self.compute_type
        if compute_type == "auto":
            compute_type = "int8_float16" if device == "cuda" else "int8"

        print(f"[WHISPER-LOCAL] Loading model: {self.model_size}")
        print(f"[WHISPER-LOCAL] Device: {device}, Compute: {compute_type}")
        self._model = WhisperModel(self.model_size, device=device, compute_type=compute_type)
        return self._model

    def _transcribe_sync(self, audio_path):
        model = self._get_model()
        with self._lock:
            segments_iter, info = model.transcribe(
                audio_path,
                beam_size=self.beam_size,
                language=self.language,
            )
            # generator is lazy: consume it inside the lock
            segments = [
                RawSegment(
                    start=seg.start,
                    end=seg.end,
                    text=seg.text.strip(),
                    confidence=logprob_to_confidence(seg.avg_logprob),
                )
                for seg in segments_iter
                if seg.text.strip()
            ]
        return segments

    async def _call(self, audio_path: str) -> ProviderResult:
        if not os.path.exists(audio_path):
            raise FileNotFoundError(audio_path)
        loop = asyncio.get_running_loop()
        segments = await loop.run_in_executor(None, self._transcribe_sync, audio_path)
        return ProviderResult(
            text=" ".join(s.text for s in segments),
            confidence=DEFAULT_SEGMENT_CONFIDENCE,
            segments=segments,
        )


def build_transcription_provider(configs) -> CapabilityProvider:
    limiter = RateLimiter(
        "whisper",
        max_concurrent=configs.WHISPER_CONCURRENCY,
        requests_per_window=configs.WHISPER_REQUESTS_PER_MINUTE,
        window_seconds=60,
        max_retries=configs.WHISPER_MAX_RETRIES,
        base_delay=1.0,
    )
    engine = configs.WHISPER_ENGINE.lower()
    logger.info("[TRANSCRIBE] Engine: %s", engine)

    if engine == "local":
        return LocalWhisperProvider(
            model_size=configs.WHISPER_MODEL_SIZE,
            device=configs.WHISPER_DEVICE,
            compute_type=configs.WHISPER_COMPUTE_TYPE,
            language=configs.WHISPER_LANGUAGE,
            limiter=limiter,
        )
    if engine == "azure":
        client = AsyncAzureOpenAI(
            api_key=configs.AZURE_OPENAI_KEY,
            azure_endpoint=configs.AZURE_OPENAI_ENDPOINT,
            api_version=configs.WHISPER_API_VERSION,
        )
        return WhisperApiProvider("azure-whisper", client, configs.WHISPER_DEPLOYMENT, configs.WHISPER_LANGUAGE, limiter=limiter)

    client = AsyncOpenAI(api_key=configs.OPENAI_API_KEY)
    return WhisperApiProvider("openai-whisper", client, configs.WHISPER_MODEL, configs.WHISPER_LANGUAGE, limiter=limiter)
