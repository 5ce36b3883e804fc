"""
Structured Logging Configuration

Log lines emitted while a message is being ingested carry its Gmail message
id; lines emitted inside an API request carry the request id. With
LOG_JSON=true every line is one JSON object, ready for log aggregation.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

message_id_var: ContextVar[str] = ContextVar('message_id', default='')
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

# LogRecord attributes copied verbatim into the JSON document
STRUCTURED_ATTRS = ("duration_ms", "entity_type", "entity_id", "platform", "platform_booking_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ingestion context attached."""

    def format(self, record: logging.LogRecord) -> str:
        doc: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for key, var in (("message_id", message_id_var), ("request_id", request_id_var)):
            value = var.get()
            if value:
                doc[key] = value

        for attr in STRUCTURED_ATTRS:
            value = getattr(record, attr, None)
            if value is not None:
                doc[attr] = value

        if hasattr(record, 'extra_data'):
            doc["data"] = record.extra_data
        if record.exc_info:
            doc["exception"] = self.formatException(record.exc_info)

        return json.dumps(doc, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """
    LoggerAdapter with helpers for the two events operators search for:
    a message reaching its final status, and a booking changing status.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def log_with_context(
        self,
        level: int,
        msg: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        platform: Optional[str] = None,
        platform_booking_id: Optional[str] = None,
        **extra_data
    ):
        extra: Dict[str, Any] = {
            'entity_type': entity_type,
            'entity_id': entity_id,
            'duration_ms': duration_ms,
            'platform': platform,
            'platform_booking_id': platform_booking_id,
        }
        extra = {k: v for k, v in extra.items() if v is not None}
        if extra_data:
            extra['extra_data'] = extra_data
        self.log(level, msg, extra=extra)

    def message_outcome(self, message_id: str, status: str, duration_ms: float, **extra_data):
        """pending/processing -> processed | ignored | failed | skipped"""
        level = logging.WARNING if status == "failed" else logging.INFO
        self.log_with_context(
            level,
            f"Message {message_id} -> {status}",
            entity_type="booking_email",
            entity_id=message_id,
            duration_ms=duration_ms,
            status=status,
            **extra_data
        )

    def booking_status_changed(
        self,
        booking_id: str,
        old_status: str,
        new_status: str,
        platform: Optional[str] = None,
        platform_booking_id: Optional[str] = None,
        **extra_data
    ):
        label = f"{platform}#{platform_booking_id}" if platform else booking_id
        self.log_with_context(
            logging.INFO,
            f"Booking {label}: {old_status} -> {new_status}",
            entity_type="booking",
            entity_id=booking_id,
            platform=platform,
            platform_booking_id=platform_booking_id,
            old_status=old_status,
            new_status=new_status,
            **extra_data
        )


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_uvicorn: bool = True
) -> None:
    """
    Configure the root logger for the API process or the standalone worker.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: One JSON object per line (LOG_JSON)
        include_uvicorn: Route uvicorn's loggers through the same handler
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]
    logging.getLogger("booking_ingest").setLevel(log_level)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(name).handlers = [handler]

    # Gmail discovery and HTTP clients are chatty at INFO
    for name, quiet_level in (
        ("httpx", logging.WARNING),
        ("httpcore", logging.WARNING),
        ("googleapiclient.discovery_cache", logging.ERROR),
        ("sqlalchemy.engine", logging.WARNING),
    ):
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_message_context(message_id: str):
    """Stamp log lines with the message being ingested. Returns a reset token."""
    return message_id_var.set(message_id)


def clear_message_context(token=None):
    if token is not None:
        message_id_var.reset(token)
    else:
        message_id_var.set('')
