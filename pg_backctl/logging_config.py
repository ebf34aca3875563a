"""Logging setup for the pg_backctl CLI.

Plain text goes to the console by default. JSON lines (one object per
record, extra fields included) are available for log shippers and are
always used for the optional log file.
"""

import json
import logging
import socket
import sys
from datetime import UTC, datetime
from typing import Optional

from pg_backctl.utils.security import sanitize_log_message

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SERVICE_NAME = "pg_backctl"

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "message": sanitize_log_message(record.getMessage()),
            "logger": record.name,
            "service.name": SERVICE_NAME,
            "hostname": socket.gethostname(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Emit JSON lines on the console instead of plain text
        log_file: Optional path that additionally receives JSON lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Suppress noisy loggers
    for name in ("botocore", "boto3", "s3transfer", "urllib3", "docker"):
        logging.getLogger(name).setLevel(logging.WARNING)
