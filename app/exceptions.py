"""Error taxonomy for the analysis service and the FastAPI handlers that render it."""

import traceback

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.logger import logger


class AnalyzerBaseException(Exception):
    """Base exception for the posture analysis service"""
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class TransportError(AnalyzerBaseException):
    """Storage, engine or network unreachable, or a non-2xx reply"""
    def __init__(self, message: str = "Upstream request failed"):
        super().__init__(message, "TRANSPORT_ERROR", 502)


class AnalysisEngineError(AnalyzerBaseException):
    """The analysis engine returned something unusable"""
    def __init__(self, message: str = "Analysis engine error", code: str = "ENGINE_ERROR", status_code: int = 502):
        super().__init__(message, code, status_code)


class EngineIngestFailure(AnalysisEngineError):
    """The engine reported that its ingest step failed"""
    def __init__(self, message: str = "File processing failed by analysis engine"):
        super().__init__(message, "ENGINE_INGEST_FAILED", 502)


class EngineTimeout(AnalysisEngineError):
    """The engine did not finish ingest within the readiness ceiling"""
    def __init__(self, message: str = "Timed out waiting for analysis engine file processing"):
        super().__init__(message, "ENGINE_TIMEOUT", 504)


class RateLimitedError(AnalysisEngineError):
    """The engine is throttling generate requests"""
    def __init__(self, message: str = "Analysis engine rate limit reached"):
        super().__init__(message, "RATE_LIMITED", 429)


class SubmissionValidationError(AnalyzerBaseException):
    """Raised when a submission is malformed and rejected before any job exists"""
    def __init__(self, message: str):
        super().__init__(message, "VALIDATION_ERROR", 400)


class JobNotFoundError(AnalyzerBaseException):
    """Raised when job is not found"""
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", "JOB_NOT_FOUND", 404)


class InvalidJobStateError(AnalyzerBaseException):
    """Raised when job is in invalid state for operation"""
    def __init__(self, job_id: str, current_state: str, expected_state: str):
        super().__init__(
            f"Job {job_id} is in state '{current_state}', expected '{expected_state}'",
            "INVALID_JOB_STATE",
            400,
        )


class JobStoreError(AnalyzerBaseException):
    """Raised when the job record store cannot be read or written"""
    def __init__(self, message: str = "Job store operation failed"):
        super().__init__(message, "JOB_STORE_ERROR", 500)


class MediaStorageError(AnalyzerBaseException):
    """Raised when media storage is unavailable or misconfigured"""
    def __init__(self, message: str = "Media storage operation failed"):
        super().__init__(message, "MEDIA_STORAGE_ERROR", 500)


async def analyzer_exception_handler(request: Request, exc: AnalyzerBaseException):
    """Handle custom application exceptions"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application exception: {exc.code} - {exc.message}",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "status_code": exc.status_code,
        }
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as 400 validation errors"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {field} {first.get('msg', 'is invalid')}".replace("  ", " ").strip()
    logger.warning(
        message,
        extra={"request_path": request.url.path, "validation_errors": str(errors)},
    )
    return JSONResponse(
        status_code=400,
        content={
            "error": "VALIDATION_ERROR",
            "message": message,
            "status_code": 400,
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={
            "http_status_code": exc.status_code,
            "http_detail": exc.detail,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
            "status_code": exc.status_code,
        }
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
            "request_path": request.url.path,
            "exc_traceback": traceback.format_exc(),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An internal error occurred. Please try again later.",
        }
    )
