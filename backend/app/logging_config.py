"""JSON line logging for the avatar API process.

Each line carries the id of the HTTP request being served (when there is one)
plus any ``extra={...}`` fields passed to the logging call, so
``logger.info("signed", extra={"path": p})`` becomes ``{"path": p, ...}``.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

request_id_var: ContextVar[Optional[str]] = ContextVar("athletrack_request_id", default=None)


def log_level() -> int:
    override = os.getenv("ATHLETRACK_LOG_LEVEL", "").strip().upper()
    if override in _LEVELS:
        return getattr(logging, override)
    return logging.INFO


class JSONLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": dt.datetime.fromtimestamp(record.created, dt.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            log_obj["requestId"] = request_id
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_") or key in log_obj:
                continue
            log_obj[key] = value
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


def setup_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONLogFormatter())

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.addHandler(console_handler)

    # uvicorn.access is replaced by the request log line written in app.main.
    for logger_name in ("uvicorn", "uvicorn.error"):
        logger = logging.getLogger(logger_name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True
    logging.getLogger("uvicorn.access").disabled = True
