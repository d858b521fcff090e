import logging
import json
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pnl_indexer.core.constants import LOG_BUFFER_SIZE

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LEVEL_NAMES = {
    logging.DEBUG: "info",
    logging.INFO: "info",
    SUCCESS: "success",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs JSON strings for structured logging.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # logger.info("msg", extra={"token": "0x..."})
        if hasattr(record, "token"):
            log_record["token"] = record.token

        if hasattr(record, "event"):
            log_record["event"] = record.event

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record)


class LogBuffer(logging.Handler):
    """
    Ring buffer of recent log lines for the status surface.
    Oldest entries are dropped once max_entries is reached.
    """
    def __init__(self, max_entries: int = LOG_BUFFER_SIZE, level=logging.INFO):
        super().__init__(level)
        self._entries = deque(maxlen=max_entries)
        self._guard = threading.Lock()

    def emit(self, record: logging.LogRecord):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": LEVEL_NAMES.get(record.levelno, "info"),
            "message": record.getMessage(),
        }
        if hasattr(record, "token"):
            entry["token"] = record.token
        with self._guard:
            self._entries.append(entry)

    def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent entries, oldest first."""
        with self._guard:
            items = list(self._entries)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def since(self, timestamp: str) -> List[Dict[str, Any]]:
        with self._guard:
            return [e for e in self._entries if e["timestamp"] > timestamp]

    def clear(self):
        with self._guard:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)


def get_logger(name: str, level=logging.INFO) -> logging.Logger:
    """
    Returns a logger configured with JSON formatting.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Check if handler already exists to avoid duplicates
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)

    return logger


def attach_log_buffer(buffer: LogBuffer, name: str = "pnl_indexer") -> LogBuffer:
    logger = logging.getLogger(name)
    if buffer not in logger.handlers:
        logger.addHandler(buffer)
    if logger.level == logging.NOTSET or logger.level > buffer.level:
        logger.setLevel(buffer.level)
    return buffer


def log_event(logger: logging.Logger, event: str, data: Dict[str, Any], level=logging.INFO):
    """
    Log a structured event. The payload is the JSON message; the event
    name is also set on the record so JSONFormatter can surface it.
    """
    payload = {
        "event": event,
        **data
    }
    extra = {"event": event}
    if "token" in data:
        extra["token"] = data["token"]
    logger.log(level, json.dumps(payload, default=str), extra=extra)
