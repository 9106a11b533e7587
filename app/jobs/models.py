"""Job record data model for async analysis jobs."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, NewType, Optional
from pydantic import BaseModel, Field
import uuid

# The durable key users poll, and the id of one in-memory processing run.
JobId = NewType("JobId", str)
AttemptId = NewType("AttemptId", str)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> JobId:
    return JobId(str(uuid.uuid4()))


def new_attempt_id() -> AttemptId:
    return AttemptId(str(uuid.uuid4()))


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MediaKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"


class AnalysisReport(BaseModel):
    """Final analysis text plus the metadata written alongside it."""
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    model_used: str
    media_kind: MediaKind
    item_count: int = 1
    processing_duration_ms: Optional[int] = None
    image_filenames: List[str] = Field(default_factory=list)


class ImageRef(BaseModel):
    """One uploaded image of an image-set submission."""
    url: str
    filename: str
    content_type: str


class JobRecord(BaseModel):
    """Tracks the lifecycle of one analysis request across its attempts.

    ``error_message`` is set only while ``status`` is ``failed``; ``report``
    is written once, on the transition into ``completed``.
    """
    id: str = Field(default_factory=new_job_id)
    status: JobStatus = JobStatus.PENDING
    status_text: Optional[str] = None
    error_message: Optional[str] = None
    media_reference: str = Field(min_length=1)
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    media_kind: MediaKind = MediaKind.VIDEO
    image_urls: List[str] = Field(default_factory=list)
    item_count: int = 1
    engine_file_reference: Optional[str] = None
    report: Optional[AnalysisReport] = None
    created_at: datetime = Field(default_factory=utcnow)

    def image_refs(self) -> List[ImageRef]:
        """Rebuild the image list of an image-set job from its stored columns."""
        filenames = [n.strip() for n in (self.original_filename or "").split(",")]
        content_types = [c.strip() for c in (self.content_type or "").split(",")]
        refs = []
        for index, url in enumerate(self.image_urls):
            refs.append(
                ImageRef(
                    url=url,
                    filename=filenames[index] if index < len(filenames) and filenames[index] else f"image_{index + 1}",
                    content_type=content_types[index] if index < len(content_types) and content_types[index] else "image/jpeg",
                )
            )
        return refs


class AttemptState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    CRASHED = "crashed"
    ABANDONED = "abandoned"


class AttemptRecord(BaseModel):
    """In-memory bookkeeping for one processing attempt of a job."""
    attempt_id: str = Field(default_factory=new_attempt_id)
    job_id: str
    state: AttemptState = AttemptState.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
