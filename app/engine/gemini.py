"""Gemini analysis engine using the google-genai SDK."""

from typing import List, Optional

import httpx
from google import genai
from google.genai import errors, types

from app.config import Settings
from app.engine.base import AnalysisEngine, EngineFile, EngineMedia, IngestState
from app.exceptions import AnalysisEngineError, RateLimitedError, TransportError
from app.logger import logger

_STATES = {
    types.FileState.ACTIVE: IngestState.ACTIVE,
    types.FileState.FAILED: IngestState.FAILED,
}


def _is_rate_limit(exc: errors.APIError) -> bool:
    return exc.code == 429 or (exc.status or "").upper() == "RESOURCE_EXHAUSTED"


class GeminiEngine(AnalysisEngine):
    """Gemini file API ingest plus generate_content, all through the async client."""

    def __init__(self, api_key: str, model_name: str = "gemini-2.0-flash",
                 request_timeout_seconds: Optional[float] = None, client: Optional[genai.Client] = None):
        if not api_key and client is None:
            raise ValueError("GEMINI_API_KEY is required")
        self.model_name = model_name
        http_options = None
        if request_timeout_seconds:
            http_options = types.HttpOptions(timeout=int(request_timeout_seconds * 1000))
        self._client = client or genai.Client(api_key=api_key, http_options=http_options)

    async def ingest(self, path: str, mime_type: str, display_name: str) -> EngineFile:
        try:
            uploaded = await self._client.aio.files.upload(
                file=path,
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except (errors.APIError, httpx.HTTPError) as e:
            raise TransportError(f"Failed to upload file to analysis engine: {e}") from e

        if not uploaded or not uploaded.name or not uploaded.uri:
            raise TransportError("Failed to upload file to analysis engine: no file reference returned")

        logger.info("File uploaded to Gemini", extra={"file_name": uploaded.name, "file_uri": uploaded.uri})
        return EngineFile(name=uploaded.name, uri=uploaded.uri, mime_type=uploaded.mime_type or mime_type)

    async def get_state(self, file: EngineFile) -> IngestState:
        try:
            info = await self._client.aio.files.get(name=file.name)
        except (errors.APIError, httpx.HTTPError) as e:
            raise TransportError(f"Failed to read analysis engine file state: {e}") from e
        return _STATES.get(info.state, IngestState.PROCESSING)

    async def generate(self, media: EngineMedia, prompt: str) -> str:
        contents: List = []
        if isinstance(media, EngineFile):
            contents.append(types.Part.from_uri(file_uri=media.uri, mime_type=media.mime_type))
        else:
            contents.extend(
                types.Part.from_bytes(data=item.data, mime_type=item.mime_type) for item in media
            )
        contents.append(prompt)

        try:
            response = await self._client.aio.models.generate_content(model=self.model_name, contents=contents)
        except errors.APIError as e:
            if _is_rate_limit(e):
                raise RateLimitedError(f"Analysis engine rate limit reached: {e}") from e
            raise TransportError(f"Analysis engine request failed: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Analysis engine unreachable: {e}") from e

        text = response.text
        if not text:
            raise AnalysisEngineError("No analysis text received from analysis engine")
        logger.info("Gemini analysis received", extra={"model": self.model_name, "text_length": len(text)})
        return text


def build_engine(settings: Settings) -> Optional[AnalysisEngine]:
    """Gemini engine from settings, or None when no API key is configured."""
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set. Analysis jobs will fail until it is configured.")
        return None
    return GeminiEngine(
        api_key=settings.gemini_api_key,
        model_name=settings.gemini_model,
        request_timeout_seconds=settings.engine_request_timeout_seconds,
    )
