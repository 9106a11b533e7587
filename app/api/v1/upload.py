"""Browser-facing upload API.

The browser never streams media through this service. It asks for a
short-lived presigned write URL, PUTs the bytes straight to object storage,
then submits the resulting public URL for analysis.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.exceptions import SubmissionValidationError
from app.storage.media_store import MediaStore

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py / analysis.py)
_media_store: MediaStore = None


def set_media_store(store: MediaStore):
    global _media_store
    _media_store = store


class UploadUrlRequest(BaseModel):
    filename: str = Field(min_length=1)
    content_type: str = Field(min_length=1)


class UploadUrlResponse(BaseModel):
    upload_url: str
    object_key: str
    public_url: str
    expires_in: int


@router.post("/generate-upload-url", response_model=UploadUrlResponse)
async def generate_upload_url(request: UploadUrlRequest):
    """Issue a presigned PUT URL for a new video or image object."""
    if _media_store is None:
        raise HTTPException(status_code=503, detail="Media store not initialized")

    if not request.content_type.startswith(("video/", "image/")):
        raise SubmissionValidationError(
            f"Invalid content type: {request.content_type}. Only video and image uploads are supported."
        )

    target = _media_store.create_write_target(request.filename, request.content_type)
    return UploadUrlResponse(
        upload_url=target.upload_url,
        object_key=target.object_key,
        public_url=target.public_url,
        expires_in=target.expires_in,
    )
