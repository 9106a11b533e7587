"""Job API: poll results, retry failed jobs, list recent analyses."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from app.db.job_repository import JobRepository
from app.exceptions import JobNotFoundError, SubmissionValidationError
from app.jobs.models import AnalysisReport, JobRecord, JobStatus
from app.jobs.retry import RetryController

router = APIRouter()

# These will be set by main.py during lifespan
_repository: JobRepository = None
_retry_controller: RetryController = None


def set_repository(repository: JobRepository):
    global _repository
    _repository = repository


def set_retry_controller(controller: RetryController):
    global _retry_controller
    _retry_controller = controller


class JobResultResponse(BaseModel):
    job_id: str
    status: JobStatus
    message: Optional[str] = None
    report: Optional[AnalysisReport] = None
    error: Optional[str] = None
    media_reference: str
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    media_kind: str
    item_count: int
    image_urls: List[str] = []
    engine_file_reference: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobResultResponse":
        return cls(
            job_id=record.id,
            status=record.status,
            message=record.status_text,
            report=record.report,
            error=record.error_message,
            media_reference=record.media_reference,
            original_filename=record.original_filename,
            content_type=record.content_type,
            media_kind=record.media_kind.value,
            item_count=record.item_count,
            image_urls=record.image_urls,
            engine_file_reference=record.engine_file_reference,
            created_at=record.created_at,
        )


class RetryResponse(BaseModel):
    original_job_id: str
    processing_attempt_id: str
    status: str
    message: str


class HistoryResponse(BaseModel):
    message: str
    data: List[JobResultResponse]
    count: int


def _require_repository() -> JobRepository:
    if _repository is None:
        raise HTTPException(status_code=503, detail="Job store not initialized")
    return _repository


@router.get("/results/{job_id}", response_model=JobResultResponse)
async def get_job_result(job_id: str):
    """Current state of a job: status text while running, report or error once done."""
    repository = _require_repository()
    job_id = job_id.strip()
    if not job_id:
        raise SubmissionValidationError("Job ID is required.")

    record = await repository.get(job_id)
    if record is None:
        raise JobNotFoundError(job_id)
    return JobResultResponse.from_record(record)


@router.post("/jobs/{job_id}/retry", response_model=RetryResponse, status_code=202)
async def retry_job(job_id: str):
    """Re-queue a failed job under its original id."""
    if _retry_controller is None:
        raise HTTPException(status_code=503, detail="Retry controller not initialized")

    result = await _retry_controller.retry(job_id)
    return RetryResponse(
        original_job_id=result.original_job_id,
        processing_attempt_id=result.processing_attempt_id,
        status=result.status.value,
        message="Job retry requested, re-queued for processing.",
    )


@router.get("/analysis-history", response_model=HistoryResponse)
async def get_analysis_history(limit: int = Query(10, ge=1, le=100)):
    repository = _require_repository()
    records = await repository.list_recent(limit)
    return HistoryResponse(
        message="Analysis history retrieved successfully",
        data=[JobResultResponse.from_record(r) for r in records],
        count=len(records),
    )
