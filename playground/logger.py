"""
Logging setup for the playground host.

Everything under the "playground" logger goes to stderr (warnings and up) and
to rotating files in {$PLAYGROUND_USER_SPACE or ~}/.playground/logs/:
- playground.log: full debug log, including guest stderr lines
- playground.errors.log: errors only (failed bootstraps, lost guests)
- playground.json: one JSON object per record, with run_id / guest_pid when set
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from playground.config import get_user_playground_path

MB = 1024 * 1024

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# (file name, level, max bytes, backups, structured)
LOG_FILES = [
    ("playground.log", logging.DEBUG, 5 * MB, 3, False),
    ("playground.errors.log", logging.ERROR, 2 * MB, 2, False),
    ("playground.json", logging.INFO, 5 * MB, 2, True),
]

# Record attributes copied into JSON output when a call passes them via extra=.
CONTEXT_FIELDS = ("run_id", "guest_pid", "stage")


class JsonFormatter(logging.Formatter):
    """Formats records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_log_dir() -> Path:
    log_dir = get_user_playground_path() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def get_logger(name: str = "playground", level: Optional[int] = None) -> logging.Logger:
    """Configure and return the playground logger.

    Modules log through logging.getLogger(__name__), so configuring the
    package logger once routes all of them. Handlers are attached on the
    first call only; if the log directory cannot be created the logger
    falls back to stderr alone.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        text_formatter = logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.WARNING)
        console.setFormatter(text_formatter)
        logger.addHandler(console)

        try:
            log_dir = get_log_dir()
            for filename, file_level, max_bytes, backups, structured in LOG_FILES:
                handler = RotatingFileHandler(
                    log_dir / filename,
                    maxBytes=max_bytes,
                    backupCount=backups,
                    encoding="utf-8",
                )
                handler.setLevel(file_level)
                handler.setFormatter(JsonFormatter() if structured else text_formatter)
                logger.addHandler(handler)
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")

    if level is not None:
        logger.setLevel(level)
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.DEBUG)

    return logger
