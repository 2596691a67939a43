import json
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
events_logger = logging.getLogger("school_attendance.events")

# Attributes every LogRecord carries; anything else came in through `extra`
_STANDARD_ATTRS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def setup_logging(log_level: str = "INFO", log_format: str = "text"):
    """
    Configure the root logger.

    json is meant for production log shipping; text keeps the event name
    visible on the console during development.
    """
    if log_format.lower() == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(log_level.upper())

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info(f"Logging configured: level={log_level}, format={log_format}")


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line with every `extra` field at the top level"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, _jsonable(value))
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False)


class ErrorTracker:
    """In-process error counters reported by /health"""

    def __init__(self, max_history: int = 100):
        self.counts: Counter = Counter()
        self.recent: deque = deque(maxlen=max_history)

    def track_error(
        self, error_type: str, error_message: str, context: Optional[Dict[str, Any]] = None
    ):
        self.counts[error_type] += 1
        self.recent.append(
            {
                "at": datetime.now(timezone.utc).isoformat(),
                "type": error_type,
                "message": error_message,
                "context": context or {},
            }
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "error_counts": dict(self.counts),
            "total_errors": sum(self.counts.values()),
            "last_errors": list(self.recent)[-10:],
        }


error_tracker = ErrorTracker()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_business_event(
    event: str, entity_type: str, entity_id: int, details: Dict[str, Any] = None
):
    """
    Emit a ledger event (attendance_marked, attendance_verified,
    summary_calculated, low_attendance_alert, ...) on the events logger.
    """
    events_logger.info(
        f"{event} {entity_type}#{entity_id}",
        extra={
            "event": event,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details or {},
            "category": "business_event",
        },
    )
