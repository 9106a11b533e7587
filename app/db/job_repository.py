"""Durable job record store: Supabase in production, in-memory for local runs.

Both implementations speak in ``JobRecord`` field names; the Supabase one maps
them onto the ``analysis_events`` table columns.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from app.exceptions import JobStoreError
from app.jobs.models import AnalysisReport, JobRecord, JobStatus, MediaKind
from app.logger import logger

# JobRecord field -> analysis_events column
_COLUMNS = {
    "id": "id",
    "status": "status",
    "status_text": "status_text",
    "error_message": "error_message",
    "media_reference": "r2_video_link",
    "original_filename": "original_filename",
    "content_type": "content_type",
    "media_kind": "analysis_type",
    "image_urls": "image_urls",
    "item_count": "image_count",
    "engine_file_reference": "gemini_file_link",
    "report": "analysis_report",
    "created_at": "created_at",
}
_FIELDS = {column: field for field, column in _COLUMNS.items()}


class JobRepository(ABC):
    """Abstract interface for the job record store."""

    @abstractmethod
    async def create(
        self,
        media_reference: str,
        original_filename: str,
        content_type: str,
        media_kind: MediaKind = MediaKind.VIDEO,
        image_urls: Optional[List[str]] = None,
    ) -> JobRecord:
        """Insert a new pending record and return it."""
        ...

    @abstractmethod
    async def update(self, job_id: str, **fields: Any) -> None:
        """Merge the given fields into the record (last writer wins)."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 10) -> List[JobRecord]:
        """Most recent records first."""
        ...

    @abstractmethod
    async def transition(self, job_id: str, expected_status: JobStatus, **fields: Any) -> bool:
        """Apply ``fields`` only if the stored status is ``expected_status``.

        Returns False when the record is missing or its status differs.
        """
        ...


def _new_record(
    media_reference: str,
    original_filename: str,
    content_type: str,
    media_kind: MediaKind,
    image_urls: Optional[List[str]],
) -> JobRecord:
    urls = list(image_urls or [])
    return JobRecord(
        status=JobStatus.PENDING,
        status_text="Submitted",
        media_reference=media_reference,
        original_filename=original_filename,
        content_type=content_type,
        media_kind=media_kind,
        image_urls=urls,
        item_count=len(urls) if media_kind == MediaKind.IMAGE else 1,
    )


def _to_column_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - set(_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown job field(s): {', '.join(sorted(unknown))}")


def to_row(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Translate JobRecord fields into analysis_events columns."""
    _check_fields(fields)
    return {_COLUMNS[name]: _to_column_value(value) for name, value in fields.items()}


def from_row(row: Dict[str, Any]) -> JobRecord:
    """Build a JobRecord from an analysis_events row."""
    data = {_FIELDS[column]: value for column, value in row.items() if column in _FIELDS}
    report = data.get("report")
    if isinstance(report, dict) and "text" not in report and report.get("analysis_text"):
        # Older image rows stored the report under analysis_text
        report = {**report, "text": report["analysis_text"]}
    if isinstance(report, dict):
        report.setdefault("media_kind", data.get("media_kind") or MediaKind.VIDEO.value)
        report.setdefault("model_used", "unknown")
        data["report"] = AnalysisReport.model_validate(report)
    if not data.get("media_reference") and data.get("image_urls"):
        data["media_reference"] = data["image_urls"][0]
    if data.get("image_urls") is None:
        data["image_urls"] = []
    if data.get("item_count") is None:
        data["item_count"] = len(data["image_urls"]) or 1
    if data.get("media_kind") is None:
        data["media_kind"] = MediaKind.VIDEO
    return JobRecord.model_validate(data)


class SupabaseJobRepository(JobRepository):
    """Job records in the Supabase ``analysis_events`` table.

    supabase-py is synchronous, so every call runs in the threadpool.
    """

    def __init__(self, client, table: str = "analysis_events"):
        self._client = client
        self._table = table

    async def _execute(self, description: str, build):
        def _run():
            return build(self._client.table(self._table)).execute()

        try:
            return await run_in_threadpool(_run)
        except Exception as e:
            logger.error(f"Supabase {description} failed: {e}", extra={"table": self._table})
            raise JobStoreError(f"Failed to {description}: {e}") from e

    async def create(self, media_reference, original_filename, content_type,
                     media_kind=MediaKind.VIDEO, image_urls=None) -> JobRecord:
        record = _new_record(media_reference, original_filename, content_type, media_kind, image_urls)
        row = to_row(record.model_dump(exclude={"report", "engine_file_reference", "error_message"}))
        response = await self._execute("create analysis event", lambda t: t.insert(row))
        if not response.data:
            raise JobStoreError("Failed to create analysis event: no row returned")
        logger.info("Analysis event created", extra={"job_id": record.id, "media_kind": media_kind.value})
        return from_row(response.data[0])

    async def update(self, job_id: str, **fields: Any) -> None:
        row = to_row(fields)
        await self._execute("update analysis event", lambda t: t.update(row).eq("id", job_id))

    async def get(self, job_id: str) -> Optional[JobRecord]:
        response = await self._execute(
            "fetch analysis event", lambda t: t.select("*").eq("id", job_id).limit(1)
        )
        if not response.data:
            return None
        return from_row(response.data[0])

    async def list_recent(self, limit: int = 10) -> List[JobRecord]:
        response = await self._execute(
            "fetch analysis history",
            lambda t: t.select("*").order("created_at", desc=True).limit(limit),
        )
        return [from_row(row) for row in response.data or []]

    async def transition(self, job_id: str, expected_status: JobStatus, **fields: Any) -> bool:
        row = to_row(fields)
        response = await self._execute(
            "transition analysis event",
            lambda t: t.update(row).eq("id", job_id).eq("status", expected_status.value),
        )
        return bool(response.data)


class InMemoryJobRepository(JobRepository):
    """Process-local job store for development and tests."""

    def __init__(self):
        self._records: Dict[str, JobRecord] = {}

    async def create(self, media_reference, original_filename, content_type,
                     media_kind=MediaKind.VIDEO, image_urls=None) -> JobRecord:
        record = _new_record(media_reference, original_filename, content_type, media_kind, image_urls)
        self._records[record.id] = record
        return record.model_copy(deep=True)

    async def update(self, job_id: str, **fields: Any) -> None:
        record = self._records.get(job_id)
        if record is None:
            return
        _check_fields(fields)
        self._records[job_id] = record.model_copy(update=fields, deep=True)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        record = self._records.get(job_id)
        return record.model_copy(deep=True) if record else None

    async def list_recent(self, limit: int = 10) -> List[JobRecord]:
        # Insertion order breaks created_at ties
        ordered = sorted(enumerate(self._records.values()), key=lambda item: (item[1].created_at, item[0]),
                         reverse=True)
        return [record.model_copy(deep=True) for _, record in ordered[:limit]]

    async def transition(self, job_id: str, expected_status: JobStatus, **fields: Any) -> bool:
        record = self._records.get(job_id)
        if record is None or record.status != expected_status:
            return False
        await self.update(job_id, **fields)
        return True
