"""
TRAPWATCH — Logging configuration.

One root handler for the process. Every record carries the `service` that
emitted it (trapwatch.api, fleet-report, ...) so API and CLI output can be
told apart once shipped to a log store. JSON is the default; text is meant
for a terminal.

Call configure_logging() once at the entry point (api/main.py,
scripts/fleet_report.py). Modules log through logging.getLogger(__name__).
"""

from __future__ import annotations

import json
import logging
import sys
from typing import IO, Any, Dict, Optional

# LogRecord attributes that are not user-supplied `extra` fields.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "service",
}

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(service)s %(name)s: %(message)s"

# Third-party loggers that are chatty at INFO (httpx logs every request).
_QUIET_LOGGERS = ("httpx", "httpcore")


class ServiceFilter(logging.Filter):
    """Stamps the emitting service on every record passing the handler."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line: service, logger, level, message and any extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "service": getattr(record, "service", None),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Extras passed via log.info("...", extra={...}), e.g. device_id
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_obj[key] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    service_name: str = "trapwatch",
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """
    Install the process-wide handler and return the service logger.

    Args:
        level:        Log level name; unknown names fall back to INFO.
        fmt:          "json" or "text".
        service_name: Stamped on every record as `service`.
        stream:       Destination, stdout by default. Tools that print their
                      result on stdout pass sys.stderr.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    # Drop handlers installed earlier (uvicorn, a previous call)
    root.handlers.clear()

    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(ServiceFilter(service_name))
    if fmt.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logger = logging.getLogger(service_name)
    logger.info("Logging configured", extra={"log_level": level, "log_format": fmt})
    return logger
