from .base import CapabilityProvider, ProviderResult, RawSegment
from .ocr_providers import VisionOcrProvider, build_ocr_providers
from .whisper_providers import LocalWhisperProvider, WhisperApiProvider, build_transcription_provider
