"""Polls a job's result until it settles."""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from app.client.api_client import AnalysisApiClient, ApiClientError
from app.config import settings
from app.logger import logger


@dataclass
class PollOutcome:
    """How polling ended.

    ``error`` carries the job's own failure message; ``transport_error`` is
    set when the result could not be read at all. At most one is set.
    """
    job_id: str
    status: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    transport_error: Optional[str] = None
    cancelled: bool = False
    timed_out: bool = False
    reads: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.report is not None


class JobPoller:
    """Reads the job immediately, then every ``interval_seconds`` until completed or failed.

    A read error stops polling. ``cancel()`` stops the loop; a read in flight
    at that moment is discarded.
    """

    def __init__(
        self,
        client: AnalysisApiClient,
        interval_seconds: Optional[float] = None,
        max_reads: Optional[int] = None,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self._client = client
        self._interval = settings.poll_interval_seconds if interval_seconds is None else interval_seconds
        self._max_reads = max_reads
        self._on_update = on_update
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def poll(self, job_id: str) -> PollOutcome:
        outcome = PollOutcome(job_id=job_id)
        while True:
            if self.cancelled:
                outcome.cancelled = True
                return outcome

            try:
                record = await self._client.get_result(job_id)
            except ApiClientError as e:
                if self.cancelled:
                    outcome.cancelled = True
                    return outcome
                logger.warning(f"Polling job {job_id} failed: {e.message}", extra={"job_id": job_id})
                outcome.transport_error = e.message
                return outcome

            if self.cancelled:
                outcome.cancelled = True
                return outcome

            outcome.reads += 1
            outcome.record = record
            outcome.status = record.get("status")

            if outcome.status == "completed":
                outcome.report = record.get("report")
                return outcome
            if outcome.status == "failed":
                outcome.error = record.get("error") or "Analysis failed"
                return outcome

            if self._on_update is not None:
                self._on_update(record)

            if self._max_reads is not None and outcome.reads >= self._max_reads:
                outcome.timed_out = True
                return outcome

            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
