"""Analysis submission endpoints for uploaded videos and image sets."""

from typing import List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.jobs.models import ImageRef, JobStatus, MediaKind
from app.jobs.orchestrator import JobOrchestrator

router = APIRouter()

# Set by main.py during lifespan (same pattern as jobs.py)
_orchestrator: JobOrchestrator = None


def set_orchestrator(orchestrator: JobOrchestrator):
    global _orchestrator
    _orchestrator = orchestrator


class VideoSubmitRequest(BaseModel):
    video_url: str = ""
    original_filename: str = ""
    content_type: str = ""


class ImageItem(BaseModel):
    url: str = ""
    filename: str = ""
    content_type: str = ""


class ImageSetSubmitRequest(BaseModel):
    images: List[ImageItem] = []


class SubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


class ImageSetSubmitResponse(SubmitResponse):
    image_count: int


def _require_orchestrator() -> JobOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Job orchestrator not initialized")
    return _orchestrator


@router.post("/submit-video-url", response_model=SubmitResponse, status_code=202)
async def submit_video_url(request: VideoSubmitRequest):
    """Submit an uploaded video for posture analysis.

    Returns as soon as the job is queued. Poll GET /api/v1/results/{job_id}.
    """
    orchestrator = _require_orchestrator()
    job_id = await orchestrator.start_analysis(
        media_reference=request.video_url.strip(),
        original_filename=request.original_filename,
        content_type=request.content_type,
        media_kind=MediaKind.VIDEO,
    )
    return SubmitResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message="Video analysis job submitted. Poll GET /api/v1/results/{job_id} for status.",
    )


@router.post("/submit-images", response_model=ImageSetSubmitResponse, status_code=202)
async def submit_images(request: ImageSetSubmitRequest):
    """Submit one to three uploaded images, analysed together as one job."""
    orchestrator = _require_orchestrator()
    images = [
        ImageRef(url=item.url.strip(), filename=item.filename, content_type=item.content_type)
        for item in request.images
    ]
    job_id = await orchestrator.start_image_set_analysis(images)
    return ImageSetSubmitResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message=f"Image analysis job submitted for {len(images)} image(s).",
        image_count=len(images),
    )
