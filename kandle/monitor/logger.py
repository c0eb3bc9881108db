"""Structured logging configuration."""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

INGEST_LOGGER_NAME = "kandle.ingest"

_INGEST_FIELDS = (
    "symbol",
    "timeframe",
    "bucket",
    "action",
    "price",
    "volume",
    "updated",
    "failed",
)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class IngestFormatter(logging.Formatter):
    """Formatter for per-tick aggregation outcomes."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": record.getMessage(),
        }

        for attr in _INGEST_FIELDS:
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(
    log_dir: Path,
    level: str = "INFO",
    json_format: bool = True,
) -> None:
    """
    Configure logging for the application.

    Creates three log files:
    - app.log: General application logs
    - ingest.log: Per-tick aggregation outcomes
    - errors.log: Error logs only

    Args:
        log_dir: Directory for log files
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting if True
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))

    root_logger.handlers.clear()

    if json_format:
        app_formatter = JsonFormatter()
    else:
        app_formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(app_formatter)
    root_logger.addHandler(console_handler)

    app_handler = logging.FileHandler(log_dir / "app.log")
    app_handler.setLevel(logging.DEBUG)
    app_handler.setFormatter(app_formatter)
    root_logger.addHandler(app_handler)

    error_handler = logging.FileHandler(log_dir / "errors.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(app_formatter)
    root_logger.addHandler(error_handler)

    ingest_logger = logging.getLogger(INGEST_LOGGER_NAME)
    ingest_logger.setLevel(logging.DEBUG)
    ingest_logger.propagate = False
    ingest_logger.handlers.clear()

    ingest_handler = logging.FileHandler(log_dir / "ingest.log")
    ingest_handler.setLevel(logging.DEBUG)
    if json_format:
        ingest_handler.setFormatter(IngestFormatter())
    else:
        ingest_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    ingest_logger.addHandler(ingest_handler)

    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_ingest_logger() -> logging.Logger:
    """Get the ingestion-outcome logger."""
    return logging.getLogger(INGEST_LOGGER_NAME)
