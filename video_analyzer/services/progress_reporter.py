import time
import logging
from typing import Optional

from video_analyzer.services.status_service import StatusSink

logger = logging.getLogger("progress_reporter")


class ProgressReporter:
    """
    Throttled progress for one upload: report() only writes when progress
    moved at least `threshold` points since the last write, force_report()
    always writes.
    """

    def __init__(self, sink: StatusSink, upload_id: str, threshold: int = 5):
        self.sink = sink
        self.upload_id = upload_id
        self.threshold = threshold
        self.last_reported: Optional[float] = None
        self.last_reported_at: Optional[float] = None
        self.report_count = 0

    async def report(self, percent: float, stage: str, message: Optional[str] = None) -> bool:
        if self.last_reported is not None and percent - self.last_reported < self.threshold:
            return False
        await self._write(percent, stage, message)
        return True

    async def force_report(self, percent: float, stage: str, message: Optional[str] = None):
        await self._write(percent, stage, message)

    async def _write(self, percent, stage, message):
        percent = min(100, int(percent))
        await self.sink.set_progress(self.upload_id, percent, stage, message)
        self.last_reported = percent
        self.last_reported_at = time.monotonic()
        self.report_count += 1
        logger.info("[PROGRESS] %s %d%% - %s%s", self.upload_id, percent, stage, f" - {message}" if message else "")

    def reset(self):
        self.last_reported = None
        self.last_reported_at = None
        self.report_count = 0
