"""
logging_config.py - Centralized JSON Logging Configuration

PURPOSE:
    Provides structured JSON logging for the stock service and its helper
    scripts, with timezone-aware timestamps and request/product context.

KEY FEATURES:
    - JSON Format: every log line is a single JSON object
    - Timezone Aware: timestamps are rendered in a configurable IANA timezone (UTC by default)
    - Request Tracking: request_id links the queue entry, the audit row and the log lines of one stock intent
    - Service Context: service_name is injected into every record
    - Exception Handling: full stack traces included in log entries

JSON LOG FIELDS:
    - timestamp: ISO 8601 timestamp
    - level: INFO, WARNING, ERROR, ...
    - logger: module name where the log originated (e.g. "services.stock_service.stock_engine")
    - message: the rendered log message
    - service_name: name of the service (injected automatically)
    - request_id / product_id / event_type: optional context passed via ``extra=``
    - exception: stack trace (only when exc_info is set)

USAGE:
    from shared.logging_config import setup_logging
    setup_logging("stock-service", level="INFO")

    logger = logging.getLogger(__name__)
    logger.info("Stock reduced", extra={"product_id": "PROD-1", "request_id": "a1b2"})

EXAMPLE JSON OUTPUT:
    {
        "timestamp": "2026-10-19T09:12:44.120931+00:00",
        "level": "INFO",
        "logger": "services.stock_service.stock_engine",
        "message": "Applied reduce of 3 to PROD-1: 10 -> 7",
        "service_name": "stock-service",
        "request_id": "6f1c0e7a9d2b4c55",
        "product_id": "PROD-1"
    }
"""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict
from zoneinfo import ZoneInfo

# Optional context attributes copied from the record into the JSON payload
CONTEXT_FIELDS = ("service_name", "request_id", "product_id", "event_type", "correlation_id")


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON logs with request context."""

    def __init__(self, tz_name: str = "UTC"):
        super().__init__()
        self.tz = ZoneInfo(tz_name)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, self.tz).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceFilter(logging.Filter):
    """Injects the service name into every record."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


def setup_logging(service_name: str, level: str = "INFO", tz_name: str = "UTC") -> None:
    """Setup JSON logging for a service. Safe to call more than once."""
    root = logging.getLogger()
    root.setLevel(level)

    # Replace a handler installed by an earlier call instead of stacking a second one
    for existing in list(root.handlers):
        if getattr(existing, "_stock_json_handler", False):
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(tz_name))
    handler.addFilter(ServiceFilter(service_name))
    handler._stock_json_handler = True
    root.addHandler(handler)
