"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in any log aggregator.
Every log includes: job_id, version, stage, timestamp, and other context.
"""

import sys
import asyncio
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar
from functools import wraps

from src.core.config import settings

# Context variables for job-scoped logging
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = settings.APP_VERSION

    job_id = job_id_var.get()
    if job_id and "job_id" not in event_dict:
        event_dict["job_id"] = job_id

    stage = stage_var.get()
    if stage and "stage" not in event_dict:
        event_dict["stage"] = stage

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(job_id="abc123", stage="compose"):
            logger.info("composition_started")
    """

    def __init__(self, job_id: Optional[str] = None, stage: Optional[str] = None):
        self.job_id = job_id
        self.stage = stage
        self._job_id_token = None
        self._stage_token = None

    def __enter__(self):
        if self.job_id:
            self._job_id_token = job_id_var.set(self.job_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._job_id_token:
            job_id_var.reset(self._job_id_token)
        return False


def set_job_context(job_id: str, stage: Optional[str] = None):
    """Set the current job context for logging."""
    job_id_var.set(job_id)
    if stage:
        stage_var.set(stage)


def clear_job_context():
    """Clear the current job context."""
    job_id_var.set(None)
    stage_var.set(None)


def with_logging(stage: str):
    """
    Decorator that logs start, completion and failure of a stage with its duration.

    Usage:
        @with_logging("compose")
        def compose(...):
            ...
    """
    def decorator(func):
        logger = get_logger(func.__module__)

        def _elapsed_ms(start_time: datetime) -> int:
            return int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

        def _failed(start_time: datetime, exc: Exception):
            logger.error(
                "stage_failed",
                stage=stage,
                duration_ms=_elapsed_ms(start_time),
                error=str(exc),
                error_type=type(exc).__name__
            )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            token = stage_var.set(stage)
            logger.info("stage_started", stage=stage)
            start_time = datetime.now(timezone.utc)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _failed(start_time, e)
                raise
            finally:
                stage_var.reset(token)
            logger.info("stage_completed", stage=stage, duration_ms=_elapsed_ms(start_time))
            return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            token = stage_var.set(stage)
            logger.info("stage_started", stage=stage)
            start_time = datetime.now(timezone.utc)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _failed(start_time, e)
                raise
            finally:
                stage_var.reset(token)
            logger.info("stage_completed", stage=stage, duration_ms=_elapsed_ms(start_time))
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# Example log output structure:
# {
#   "timestamp": "2024-05-20T10:00:00Z",
#   "level": "info",
#   "event": "composition_completed",
#   "stage": "compose",
#   "job_id": "550e8400-e29b-41d4-a716-446655440000",
#   "version": "1.0.0",
#   "runs_used": 9,
#   "on_pixels": 1600
# }
