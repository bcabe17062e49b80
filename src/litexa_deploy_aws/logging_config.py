"""
Standardized logging configuration for the deployment toolchain.
"""
import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import structlog


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        if hasattr(record, 'deployment_name'):
            log_entry["deployment_name"] = record.deployment_name

        return json.dumps(log_entry, default=str)


class ContextFilter(logging.Filter):
    """Filter to add deployment context to log records."""

    def __init__(self, service_name: str = "litexa-deploy-aws"):
        super().__init__()
        self.service_name = service_name
        self.deployment_name = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context information to log record."""
        record.service_name = self.service_name
        if self.deployment_name:
            record.deployment_name = self.deployment_name
        return True

    def set_deployment(self, deployment_name: str):
        """Set the deployment target being worked on."""
        self.deployment_name = deployment_name


def setup_logging(
    service_name: str = "litexa-deploy-aws",
    log_level: str = None,
    enable_json: bool = None,
    enable_structlog: bool = True,
    stream=None
) -> logging.Logger:
    """
    Set up standardized logging configuration.

    Args:
        service_name: Name of the service for logging context
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_json: Enable JSON formatting (defaults to LITEXA_LOG_JSON)
        enable_structlog: Enable structured logging with structlog
        stream: Stream for log output (defaults to stdout)

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.environ.get('LITEXA_LOG_LEVEL', 'INFO')

    if enable_json is None:
        enable_json = os.environ.get('LITEXA_LOG_JSON', '').lower() in ('1', 'true', 'yes')

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)

    if enable_json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)

    context_filter = ContextFilter(service_name)
    handler.addFilter(context_filter)
    root_logger.addHandler(handler)

    _configure_aws_loggers()

    if enable_structlog:
        _setup_structlog(enable_json)

    logger = logging.getLogger(service_name)
    logger.context_filter = context_filter

    logger.debug(f"Logging configured for {service_name}", extra={
        'extra_fields': {
            'log_level': log_level,
            'json_enabled': enable_json,
            'structlog_enabled': enable_structlog
        }
    })

    return logger


def _configure_aws_loggers():
    """Configure AWS SDK loggers."""
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('s3transfer').setLevel(logging.WARNING)


def _setup_structlog(json_enabled: bool):
    """Set up structlog for structured logging."""
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the standard configuration.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def set_deployment_context(logger: logging.Logger, deployment_name: str):
    """Tag subsequent records with the deployment target name."""
    if hasattr(logger, 'context_filter'):
        logger.context_filter.set_deployment(deployment_name)


class DeploymentLogger:
    """
    The logging capability handed to deployment steps.

    Steps only ever call ``log``, ``error``, ``warning`` and ``verbose``, so a
    test can pass any object offering those four methods instead.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("litexa-deploy-aws")

    def log(self, message: str, **fields):
        self.logger.info(message, extra={'extra_fields': fields} if fields else None)

    def verbose(self, message: str, **fields):
        self.logger.debug(message, extra={'extra_fields': fields} if fields else None)

    def warning(self, message: str, **fields):
        self.logger.warning(message, extra={'extra_fields': fields} if fields else None)

    def error(self, error, **fields):
        # Exceptions keep their traceback in the log
        if isinstance(error, BaseException):
            self.logger.error(
                str(error),
                exc_info=(type(error), error, error.__traceback__),
                extra={'extra_fields': fields} if fields else None
            )
        else:
            self.logger.error(error, extra={'extra_fields': fields} if fields else None)


@contextmanager
def log_execution_time(operation_name: str, logger_instance=None):
    """
    Context manager to log execution time of operations.

    Args:
        operation_name: Name of the operation being timed
        logger_instance: DeploymentLogger to use (defaults to a new one)
    """
    if logger_instance is None:
        logger_instance = DeploymentLogger()

    start_time = time.time()
    try:
        yield
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        logger_instance.log(f"{operation_name} in {duration_ms}ms", duration_ms=duration_ms)
