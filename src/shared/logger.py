"""
Structured JSON Logging Configuration

Structured logging for the audit listener. Every line is one JSON object so
that DLQ routing, duplicate detection and retries can be queried by field
(message id, Kafka position) in a log aggregator.

EXAMPLE OUTPUT:
{
  "timestamp": "2024-01-01T00:00:00.123Z",
  "level": "WARNING",
  "service": "audit-listener",
  "logger": "src.listener.writers",
  "correlation_id": "m1",
  "message": "Audit message already processed",
  "extra": {"kafka_topic": "audit.methods", "kafka_partition": 0, "kafka_offset": 42}
}
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Attributes every LogRecord has; anything else came in through `extra`
STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "taskName", "exc_info", "exc_text", "stack_info",
        "correlation_id",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Log formatter that outputs one JSON object per record.

    Keys: timestamp (ISO 8601, UTC), level, service, logger, message,
    correlation_id (if set), exception (if any), extra (fields passed via
    `extra=`).
    """

    def __init__(self, service_name: str = "audit-listener", include_extra: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self._format_timestamp(record.created),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra_fields = {
                k: v
                for k, v in record.__dict__.items()
                if k not in STANDARD_ATTRS and not k.startswith("_")
            }
            if extra_fields:
                log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)

    @staticmethod
    def _format_timestamp(created: float) -> str:
        dt = datetime.fromtimestamp(created, tz=timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class PlainTextFormatter(logging.Formatter):
    """
    Human-readable formatter for local development.

    Format: [2024-01-01 00:00:00] INFO [audit-listener] Record committed
    """

    def __init__(self, service_name: str = "audit-listener"):
        super().__init__(
            fmt=f"[%(asctime)s] %(levelname)s [{service_name}] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logger(
    name: str,
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> logging.Logger:
    """
    Set up a structured logger writing to stdout.

    Configure the package logger ("src") once at startup; module loggers
    created with logging.getLogger(__name__) propagate to it.

    Args:
        name: Logger name
        service_name: Service identifier written on every line
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" or "text"

    Returns:
        Configured logging.Logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Reconfiguring replaces the handler instead of stacking a second one
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logger.level)

    if log_format.lower() == "json":
        console_handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        console_handler.setFormatter(PlainTextFormatter(service_name=service_name))

    logger.addHandler(console_handler)
    logger.propagate = False
    return logger


class CorrelationAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds the adapter's context to every record.

    Used per Kafka record: correlation_id is the record's message id once it
    is known, its topic-partition@offset before that.

    Example:
        >>> record_logger = CorrelationAdapter(logger, {"correlation_id": "m1"})
        >>> record_logger.info("Record committed")
    """

    def process(self, msg: str, kwargs: dict) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
