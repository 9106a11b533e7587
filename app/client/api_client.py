"""Async client for the analysis HTTP API, used by UI tiers and scripts."""

import mimetypes
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from app.client.uploader import ProgressCallback, upload_to_storage
from app.logger import logger

MAX_VIDEO_BYTES = 5 * 1024 * 1024 * 1024
MAX_IMAGES = 3


class ApiClientError(Exception):
    """A call to the analysis API failed.

    ``status_code`` is None when the service could not be reached at all.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


@dataclass(frozen=True)
class SubmittedJob:
    job_id: str
    public_urls: List[str]


class AnalysisApiClient:
    """Thin wrapper over the ``/api/v1`` endpoints."""

    def __init__(self, base_url: str = "http://localhost:8000", http_client: Optional[httpx.AsyncClient] = None,
                 timeout_seconds: float = 30.0):
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/") + "/api/v1"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "AnalysisApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, self._base_url + path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiClientError(f"Analysis service unreachable: {type(e).__name__}: {e}") from e

        if not response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = body.get("message") or f"Request failed with status {response.status_code}"
            raise ApiClientError(message, status_code=response.status_code, code=body.get("error"))
        try:
            return response.json()
        except ValueError as e:
            raise ApiClientError(
                f"Malformed response from analysis service (status {response.status_code})",
                status_code=response.status_code,
            ) from e

    # Endpoints

    async def generate_upload_url(self, filename: str, content_type: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/generate-upload-url", json={"filename": filename, "content_type": content_type}
        )

    async def submit_video_url(self, video_url: str, original_filename: str, content_type: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/submit-video-url",
            json={"video_url": video_url, "original_filename": original_filename, "content_type": content_type},
        )

    async def submit_images(self, images: Sequence[Dict[str, str]]) -> Dict[str, Any]:
        return await self._request("POST", "/submit-images", json={"images": list(images)})

    async def get_result(self, job_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/results/{job_id}")

    async def retry_job(self, job_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/jobs/{job_id}/retry")

    async def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/analysis-history", params={"limit": limit})
        return body.get("data", [])

    # Upload flows

    async def upload_and_submit_video(
        self,
        path: str,
        content_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> SubmittedJob:
        """Write target -> direct upload -> submit. Returns the new job id."""
        size = os.path.getsize(path)
        if size > MAX_VIDEO_BYTES:
            raise ApiClientError(f"File too large: {size} bytes exceeds the 5 GB limit.")
        filename = os.path.basename(path)
        content_type = content_type or mimetypes.guess_type(filename)[0] or "video/mp4"
        if not content_type.startswith("video/"):
            raise ApiClientError(f"Not a video file: {content_type}")

        _stage(on_stage, "Requesting upload URL...")
        target = await self.generate_upload_url(filename, content_type)

        _stage(on_stage, "Uploading to storage...")
        if not await upload_to_storage(self._http, target["upload_url"], path, content_type, on_progress=on_progress):
            raise ApiClientError(f"Upload of {filename} to storage failed.")

        _stage(on_stage, "Starting analysis...")
        submitted = await self.submit_video_url(target["public_url"], filename, content_type)
        logger.info("Video submitted for analysis", extra={"job_id": submitted["job_id"]})
        return SubmittedJob(job_id=submitted["job_id"], public_urls=[target["public_url"]])

    async def upload_and_submit_images(
        self,
        paths: Sequence[str],
        on_progress: Optional[ProgressCallback] = None,
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> SubmittedJob:
        if not paths:
            raise ApiClientError("At least one image is required.")
        if len(paths) > MAX_IMAGES:
            raise ApiClientError(f"Maximum {MAX_IMAGES} images allowed.")

        images = []
        for index, path in enumerate(paths, start=1):
            filename = os.path.basename(path)
            content_type = mimetypes.guess_type(filename)[0] or "image/jpeg"
            if not content_type.startswith("image/"):
                raise ApiClientError(f"Not an image file: {filename}")

            _stage(on_stage, f"Uploading image {index}/{len(paths)}...")
            target = await self.generate_upload_url(filename, content_type)
            if not await upload_to_storage(self._http, target["upload_url"], path, content_type,
                                           on_progress=on_progress):
                raise ApiClientError(f"Upload of {filename} to storage failed.")
            images.append({"url": target["public_url"], "filename": filename, "content_type": content_type})

        _stage(on_stage, "Starting analysis...")
        submitted = await self.submit_images(images)
        return SubmittedJob(job_id=submitted["job_id"], public_urls=[image["url"] for image in images])


def _stage(callback: Optional[Callable[[str], None]], message: str) -> None:
    if callback is not None:
        callback(message)
