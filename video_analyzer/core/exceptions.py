class VideoAnalyzerError(Exception):
    """Base class for worker errors."""


class InvalidJobError(VideoAnalyzerError):
    """Job payload is missing required fields."""


class MediaError(VideoAnalyzerError):
    """Input media is corrupt, unreadable or unsupported."""


class NoVideoStreamError(MediaError):
    pass


class SubprocessError(VideoAnalyzerError):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class SubprocessTimeoutError(SubprocessError):
    pass


class SubprocessStallError(SubprocessError):
    pass


class StorageError(VideoAnalyzerError):
    pass


class BlobNotFoundError(StorageError):
    pass


class CheckpointNotFoundError(VideoAnalyzerError):
    pass


class ProviderError(VideoAnalyzerError):
    def __init__(self, message: str, provider: str = "", fatal: bool = False):
        super().__init__(message)
        self.provider = provider
        self.fatal = fatal


class AllProvidersFailedError(VideoAnalyzerError):
    def __init__(self, errors: dict[str, str]):
        details = "; ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"All providers failed: {details}" if details else "No OCR provider available")
        self.errors = errors


class BatchProcessingError(VideoAnalyzerError):
    def __init__(self, message: str, batch_index: int):
        super().__init__(message)
        self.batch_index = batch_index


def user_message(exc: BaseException) -> str:
    """Short, user-facing description of a job failure (no internals)."""
    if isinstance(exc, InvalidJobError):
        return f"Invalid job: {exc}"
    if isinstance(exc, NoVideoStreamError):
        return "The uploaded file has no video stream."
    if isinstance(exc, MediaError):
        return "The uploaded video could not be read."
    if isinstance(exc, SubprocessTimeoutError):
        return "Video processing timed out."
    if isinstance(exc, SubprocessStallError):
        return "Video processing stalled."
    if isinstance(exc, StorageError):
        return "The uploaded video could not be downloaded."
    if isinstance(exc, BatchProcessingError):
        return f"Text recognition failed for batch {exc.batch_index + 1}."
    return "Video processing failed. Please try again."
