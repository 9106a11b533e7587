"""Re-run a failed job under its original id."""

from dataclasses import dataclass

from app.db.job_repository import JobRepository
from app.exceptions import InvalidJobStateError, JobNotFoundError, SubmissionValidationError
from app.jobs.models import AttemptId, JobId, JobStatus
from app.jobs.orchestrator import JobOrchestrator
from app.logger import logger

RETRY_STATUS_TEXT = "Job retry requested, re-queued for processing."


@dataclass(frozen=True)
class RetryResult:
    original_job_id: JobId
    processing_attempt_id: AttemptId
    status: JobStatus = JobStatus.PENDING


class RetryController:
    def __init__(self, repository: JobRepository, orchestrator: JobOrchestrator):
        self._repository = repository
        self._orchestrator = orchestrator

    async def retry(self, job_id: str) -> RetryResult:
        """Reset a failed job to pending and queue a fresh attempt for it.

        The reset is conditional on the stored status still being ``failed``,
        so of two concurrent retries only one schedules an attempt.
        """
        job_id = (job_id or "").strip()
        if not job_id:
            raise SubmissionValidationError("Job ID is required.")

        record = await self._repository.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        if record.status != JobStatus.FAILED:
            raise InvalidJobStateError(job_id, record.status.value, JobStatus.FAILED.value)

        swapped = await self._repository.transition(
            job_id,
            JobStatus.FAILED,
            status=JobStatus.PENDING,
            status_text=RETRY_STATUS_TEXT,
            error_message=None,
        )
        if not swapped:
            current = await self._repository.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise InvalidJobStateError(job_id, current.status.value, JobStatus.FAILED.value)

        attempt_id = await self._orchestrator.schedule_attempt(job_id)
        logger.info("Job retry scheduled", extra={"job_id": job_id, "attempt_id": attempt_id})
        return RetryResult(original_job_id=JobId(job_id), processing_attempt_id=attempt_id)
