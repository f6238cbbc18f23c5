#!/usr/bin/env python3
"""
Cloudy Kangaroo - Structured Logging Utilities

Structured logging for the dashboard. Every log call may carry extra fields
(passed via ``extra={}``); the NDJSON formatter writes them as top-level keys
so the access log, audit log and metrics log are all machine readable.

Key Features:
- NDJSON (newline-delimited JSON) format, opt-in via LOG_JSON_ENABLED
- Text fallback that still shows the request id
- Request id injection through RequestIdFilter
- Optional file handlers for the access and audit loggers

Usage:
    from kangaroo.logging_utils import setup_json_logging

    logger = setup_json_logging(service_name="web_ui", version="1.4.0")
    logger.info("Silenced client", extra={"client": "web01"})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Host/pod name added to every JSON record

Author: Cloudy Kangaroo Team
License: MIT
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import g, has_request_context

ACCESS_LOGGER_NAME = "kangaroo.access"
AUDIT_LOGGER_NAME = "kangaroo.audit"
METRICS_LOGGER_NAME = "kangaroo.metrics"

# Attributes every LogRecord already carries; extra fields must not use them.
RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "correlation_id", "session_id"}


def safe_extra(fields: Dict[str, Any], prefix: str = "kv_") -> Dict[str, Any]:
    """
    Return a copy of ``fields`` usable as ``extra=``.

    Keys that collide with LogRecord attributes are prefixed instead of being
    dropped, since logging raises KeyError on a collision.
    """
    extra = {}
    for key, value in fields.items():
        if key in RESERVED_RECORD_ATTRS:
            key = f"{prefix}{key}"
        extra[key] = value
    return extra


class NDJSONFormatter(logging.Formatter):
    """
    Formats each record as a single JSON object on one line.

    Fields included:
    - timestamp, level, message, logger, module, function, line, thread
    - service, version, pod_name
    - correlation_id (request id, "system" outside a request)
    - error (type, message, traceback) when exc_info is present
    - every extra field from the log call
    """

    _SKIP = RESERVED_RECORD_ATTRS - {"correlation_id", "session_id"}

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        session_id = getattr(record, "session_id", None)
        if session_id:
            log_entry["session_id"] = session_id

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in self._SKIP:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        try:
            return json.dumps(log_entry, default=str)
        except Exception as e:
            return json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "level": "ERROR",
                    "message": f"Failed to serialize log record: {e}",
                    "service": self.service_name,
                    "correlation_id": "system",
                }
            )


class RequestIdFilter(logging.Filter):
    """Adds the current request id and session id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "system"
            if has_request_context():
                ctx = getattr(g, "request_context", None)
                if ctx is not None:
                    record.correlation_id = ctx.request_id
                    if ctx.session_id and not hasattr(record, "session_id"):
                        record.session_id = ctx.session_id
        return True


def _text_formatter() -> logging.Formatter:
    return logging.Formatter(
        "%(asctime)s - %(levelname)s - %(name)s - [%(correlation_id)s] - %(message)s"
    )


def _json_enabled() -> bool:
    return os.getenv("LOG_JSON_ENABLED", "false").lower() in ("true", "1", "yes", "on")


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure the root logger for the dashboard.

    Idempotent: existing root handlers are replaced. The request id filter is
    attached to the handler so records from every logger are enriched.

    Args:
        service_name: Name written into JSON records (e.g. "web_ui")
        version: Service version string
        level: Default level, overridden by LOG_LEVEL

    Returns:
        The root logger
    """
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    handler.addFilter(RequestIdFilter())

    if _json_enabled():
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
        logger.addHandler(handler)
        logger.info(f"JSON logging enabled for service={service_name} version={version}")
    else:
        handler.setFormatter(_text_formatter())
        logger.addHandler(handler)
        logger.info(f"Standard logging enabled for service={service_name}")

    return logger


def add_file_handler(
    logger_name: str,
    path: Optional[str],
    service_name: str,
    version: str,
    level: int = logging.DEBUG,
) -> Optional[logging.Handler]:
    """
    Attach an append-mode NDJSON file handler to a named logger.

    Used for the access log and the audit log. Returns None when no path is
    configured. Records still propagate to the root handler.
    """
    if not path:
        return None

    target = logging.getLogger(logger_name)
    for existing in target.handlers:
        if isinstance(existing, logging.FileHandler) and existing.baseFilename == os.path.abspath(path):
            return existing

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    target.addHandler(handler)
    target.setLevel(min(target.level or level, level))
    return handler


def get_logger(name: str = __name__) -> logging.Logger:
    """Named logger inheriting the setup_json_logging() configuration."""
    return logging.getLogger(name)
