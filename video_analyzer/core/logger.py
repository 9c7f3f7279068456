import os
import json
import logging
import traceback
from datetime import datetime, timezone

critical_logger = logging.getLogger("video_analyzer.critical")


def setup_logging(log_dir: str = "logs", level: str = "INFO", filename: str = "worker.log"):
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(os.path.join(log_dir, filename), encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )


def log_critical_error(message: str, exc: BaseException | None = None, **context):
    """
    Emit one structured JSON line for errors that need investigation.
    Stack traces go here, never into user-visible status messages.
    """
    record = {
        "severity": "CRITICAL",
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **{k: v for k, v in context.items() if v is not None},
    }
    if exc is not None:
        record["error_type"] = type(exc).__name__
        record["error"] = str(exc)
        record["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    critical_logger.critical(json.dumps(record, ensure_ascii=False, default=str))
