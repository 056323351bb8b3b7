"""
Structured JSON logging configuration.

Every record carries:
- timestamp (ISO 8601)
- level
- service (service name)
- trace_id (OpenTelemetry trace ID for correlation)
- request_id (set per HTTP request by RequestIDMiddleware)
- message

Usage:
    from core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Webhook processed", extra={"chat_id": chat.id})
"""
import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Dict, Any
from pythonjsonlogger import jsonlogger
from opentelemetry import trace

# Correlation ID of the HTTP request being handled (set by RequestIDMiddleware)
request_id_var: ContextVar[str] = ContextVar("request_id", default="no-request")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding the mandatory observability fields.

    Context passed through ``extra`` is kept as additional keys.
    """

    def __init__(self, service_name: str = "crm-chat", *args, **kwargs):
        """
        Initialize JSON formatter.

        Args:
            service_name: Name of the service emitting logs
        """
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['service'] = self.service_name
        log_record['logger'] = record.name
        log_record['message'] = record.getMessage()
        log_record['trace_id'] = getattr(record, 'trace_id', 'no-trace')
        log_record['request_id'] = getattr(record, 'request_id', 'no-request')

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno


class LogContextFilter(logging.Filter):
    """
    Inject trace_id (OpenTelemetry) and request_id (request context) into records.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, '032x')
        else:
            record.trace_id = 'no-trace'

        if not hasattr(record, 'request_id'):
            record.request_id = request_id_var.get()

        return True


def configure_logging(
    service_name: str = "crm-chat",
    level: str = "INFO",
    enable_json: bool = True
) -> None:
    """
    Configure root logging for a process.

    Args:
        service_name: Name of the service (e.g., "crm-chat-api", "crm-chat-delivery-worker")
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_json: Whether to use JSON formatting (True for production)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(LogContextFilter())

    if enable_json:
        formatter = CustomJsonFormatter(
            service_name=service_name,
            fmt='%(timestamp)s %(level)s %(service)s %(trace_id)s %(request_id)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Noisy third-party loggers
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
