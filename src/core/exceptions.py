"""
Global Exception Handling

Defines the aggregation error taxonomy and renders it as structured
JSON responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class MaskAggregationError(Exception):
    """Base exception for the aggregation service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "job_id": self.job_id,
            "code": self.code,
            "stage": self.stage,
            "details": self.details,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }


class ValidationError(MaskAggregationError):
    """Raised when a run payload or region is malformed. Contained to that run."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "validation")
        super().__init__(message, code=400, **kwargs)


class InsufficientDataError(MaskAggregationError):
    """Raised when there are no usable runs to combine. Fails the job."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "compose")
        super().__init__(message, code=422, **kwargs)


class CompositionError(MaskAggregationError):
    """Raised when raster decoding or geometry fails during composition. Fails the job."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "compose")
        super().__init__(message, code=500, **kwargs)


class ConcurrencyConflict(MaskAggregationError):
    """Raised when a conditional status transition loses the race."""

    def __init__(self, message: str = "Job already claimed", **kwargs):
        kwargs.setdefault("stage", "claim")
        super().__init__(message, code=409, **kwargs)


class JobNotFoundError(MaskAggregationError):
    """Raised when an aggregation job does not exist."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id, **kwargs)


class AppendConflictError(MaskAggregationError):
    """Raised when a concurrent writer changed the results list first."""

    def __init__(self, message: str = "Concurrent append detected", **kwargs):
        kwargs.setdefault("stage", "append")
        super().__init__(message, code=409, **kwargs)


class JobClosedError(MaskAggregationError):
    """Raised when a job no longer accepts run results."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "append")
        super().__init__(message, code=409, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(MaskAggregationError)
    async def aggregation_exception_handler(request: Request, exc: MaskAggregationError):
        logger.warning(
            "aggregation_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )
        return JSONResponse(status_code=exc.code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
