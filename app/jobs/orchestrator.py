"""Analysis job orchestration.

Drives one job from "media URL known" to a terminal record state:

    pending -> processing (downloading -> ingesting -> awaiting ready -> generating)
            -> completed | failed

Submission creates the record and queues an attempt; the attempt itself runs
on the dispatcher and owns its error handling end to end, so every attempt
finishes with exactly one terminal write.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from app.config import Settings
from app.db.job_repository import JobRepository
from app.engine.base import AnalysisEngine, EngineMedia, InlineMedia, ReadyOutcome
from app.exceptions import (
    AnalysisEngineError,
    AnalyzerBaseException,
    EngineIngestFailure,
    EngineTimeout,
    RateLimitedError,
    TransportError,
)
from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import (
    AnalysisReport,
    AttemptId,
    AttemptRecord,
    ImageRef,
    JobId,
    JobRecord,
    JobStatus,
    MediaKind,
)
from app.jobs.prompts import build_prompt
from app.jobs.validation import validate_image_set, validate_media_submission
from app.logger import logger
from app.storage.media_store import MediaStore
from app.storage.temp_media import TempMediaStore

DOWNLOAD_CHUNK_BYTES = 1024 * 1024
INTERRUPTED_MESSAGE = "Processing was interrupted before completion. Please retry the job."


@dataclass
class _AttemptContext:
    job_id: str
    attempt_id: str
    started: float = field(default_factory=time.monotonic)
    temp_path: Optional[str] = None
    terminal_written: bool = False

    @property
    def log_extra(self) -> dict:
        return {"job_id": self.job_id, "attempt_id": self.attempt_id}

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def describe_failure(exc: BaseException) -> str:
    if isinstance(exc, AnalyzerBaseException):
        return exc.message
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


class JobOrchestrator:
    """Creates analysis jobs and runs their attempts against the engine."""

    def __init__(
        self,
        repository: JobRepository,
        engine: Optional[AnalysisEngine],
        media_store: MediaStore,
        temp_store: TempMediaStore,
        http_client: httpx.AsyncClient,
        settings: Settings,
        dispatcher: Optional[JobDispatcher] = None,
    ):
        self._repository = repository
        self._engine = engine
        self._media_store = media_store
        self._temp_store = temp_store
        self._http = http_client
        self._settings = settings
        self._dispatcher = dispatcher

    def bind_dispatcher(self, dispatcher: JobDispatcher) -> None:
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def start_analysis(
        self,
        media_reference: str,
        original_filename: str,
        content_type: str,
        media_kind: MediaKind = MediaKind.VIDEO,
    ) -> JobId:
        """Validate, create a pending job and queue its first attempt."""
        if media_kind == MediaKind.IMAGE:
            return await self.start_image_set_analysis(
                [ImageRef(url=media_reference, filename=original_filename, content_type=content_type)]
            )

        validate_media_submission(self._media_store, media_reference, original_filename, content_type, media_kind)
        record = await self._repository.create(
            media_reference=media_reference,
            original_filename=original_filename,
            content_type=content_type,
            media_kind=media_kind,
        )
        logger.info(
            "Analysis job created",
            extra={"job_id": record.id, "media_reference": media_reference, "content_type": content_type},
        )
        await self.schedule_attempt(record.id)
        return JobId(record.id)

    async def start_image_set_analysis(self, images: List[ImageRef]) -> JobId:
        """Same lifecycle as a video job, for 1-3 images analysed together."""
        validate_image_set(self._media_store, images, self._settings.max_images_per_job)
        record = await self._repository.create(
            media_reference=images[0].url,
            original_filename=", ".join(image.filename for image in images),
            content_type=", ".join(image.content_type for image in images),
            media_kind=MediaKind.IMAGE,
            image_urls=[image.url for image in images],
        )
        logger.info("Image analysis job created", extra={"job_id": record.id, "image_count": len(images)})
        await self.schedule_attempt(record.id)
        return JobId(record.id)

    async def schedule_attempt(self, job_id: str) -> AttemptId:
        """Queue a fresh attempt whose record writes all target ``job_id``."""
        if self._dispatcher is None:
            raise RuntimeError("Job dispatcher not initialized")
        attempt = AttemptRecord(job_id=job_id)
        await self._dispatcher.submit(attempt)
        logger.info("Attempt queued", extra={"job_id": job_id, "attempt_id": attempt.attempt_id})
        return AttemptId(attempt.attempt_id)

    # ------------------------------------------------------------------
    # Attempt execution
    # ------------------------------------------------------------------

    async def run_attempt(self, attempt: AttemptRecord) -> None:
        """Run one attempt to a terminal state. Never raises except on cancellation."""
        ctx = _AttemptContext(job_id=attempt.job_id, attempt_id=attempt.attempt_id)
        logger.info("Attempt started", extra=ctx.log_extra)

        try:
            record = await self._repository.get(ctx.job_id)
            if record is None:
                logger.error("Job record vanished before its attempt ran", extra=ctx.log_extra)
                return
            if self._engine is None:
                raise AnalysisEngineError("Analysis engine is not configured on server.")

            if record.media_kind == MediaKind.IMAGE:
                await self._run_image_set(ctx, record)
            else:
                await self._run_media(ctx, record)
        except asyncio.CancelledError:
            await self._fail(ctx, INTERRUPTED_MESSAGE)
            raise
        except Exception as e:
            logger.error(f"Attempt failed: {describe_failure(e)}", extra={**ctx.log_extra, "exc_type": type(e).__name__})
            await self._fail(ctx, describe_failure(e))
        finally:
            self._temp_store.release(ctx.temp_path)
            logger.info("Attempt finished", extra={**ctx.log_extra, "duration_ms": ctx.elapsed_ms()})

    async def abandon_attempt(self, attempt: AttemptRecord) -> None:
        """Finalize a queued attempt that will never run, so its job can be retried."""
        ctx = _AttemptContext(job_id=attempt.job_id, attempt_id=attempt.attempt_id)
        await self._fail(ctx, INTERRUPTED_MESSAGE)

    async def _run_media(self, ctx: _AttemptContext, record: JobRecord) -> None:
        mime_type = record.content_type or "video/mp4"
        display_name = record.original_filename or os.path.basename(record.media_reference)

        await self._progress(ctx, "Downloading video from storage...")
        ctx.temp_path = self._temp_store.get_attempt_path(ctx.job_id, ctx.attempt_id, display_name)
        size = await self._download(record.media_reference, ctx.temp_path)
        logger.info("Media downloaded", extra={**ctx.log_extra, "bytes": size})

        await self._progress(ctx, "Video downloaded, uploading to analysis engine...")
        engine_file = await self._engine.ingest(ctx.temp_path, mime_type, display_name)
        await self._progress(
            ctx,
            "Uploaded to analysis engine, waiting for file processing...",
            engine_file_reference=engine_file.uri,
        )

        ceiling = self._settings.ingest_ceiling_seconds
        outcome = await self._engine.await_ready(
            engine_file, ceiling_seconds=ceiling, interval_seconds=self._settings.ingest_poll_interval_seconds
        )
        if outcome == ReadyOutcome.FAILED:
            raise EngineIngestFailure(f"File processing failed by analysis engine ({engine_file.uri})")
        if outcome == ReadyOutcome.TIMEOUT:
            raise EngineTimeout(
                f"File processing timeout: analysis engine did not finish processing "
                f"{engine_file.uri} within {ceiling:g} seconds"
            )

        await self._progress(ctx, "Engine file active, generating analysis...")
        text = await self._generate(ctx, engine_file, build_prompt(MediaKind.VIDEO, 1))
        await self._complete(
            ctx,
            AnalysisReport(
                text=text,
                model_used=self._engine.model_name,
                media_kind=MediaKind.VIDEO,
                item_count=1,
                processing_duration_ms=ctx.elapsed_ms(),
            ),
        )

    async def _run_image_set(self, ctx: _AttemptContext, record: JobRecord) -> None:
        images = record.image_refs()
        count = len(images)

        await self._progress(ctx, f"Fetching {count} image(s) for analysis...")
        payloads = [await self._fetch_inline(image) for image in images]

        await self._progress(ctx, f"Generating analysis for {count} image(s)...")
        text = await self._generate(ctx, payloads, build_prompt(MediaKind.IMAGE, count))
        await self._complete(
            ctx,
            AnalysisReport(
                text=text,
                model_used=self._engine.model_name,
                media_kind=MediaKind.IMAGE,
                item_count=count,
                processing_duration_ms=ctx.elapsed_ms(),
                image_filenames=[image.filename for image in images],
            ),
        )

    async def _generate(self, ctx: _AttemptContext, media: EngineMedia, prompt: str) -> str:
        """Generate, retrying only on rate limiting and only a bounded number of times."""
        retries = self._settings.rate_limit_retries
        backoff = self._settings.rate_limit_backoff_seconds
        attempt = 0
        while True:
            try:
                return await self._engine.generate(media, prompt)
            except RateLimitedError:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Engine rate limited, retrying in {backoff:g}s",
                    extra={**ctx.log_extra, "retry": attempt},
                )
                await self._progress(ctx, f"Analysis engine is busy, retrying in {backoff:g} seconds...")
                await asyncio.sleep(backoff)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _download(self, url: str, path: str) -> int:
        """Stream ``url`` into ``path``; returns the byte count."""
        size = 0
        try:
            async with self._http.stream("GET", url, timeout=self._settings.media_fetch_timeout_seconds) as response:
                if not response.is_success:
                    body = (await response.aread())[:500].decode("utf-8", errors="replace")
                    raise TransportError(_download_failure(
                        f"{response.status_code} {response.reason_phrase}. Details: {body or 'no response body'}"
                    ))
                loop = asyncio.get_running_loop()
                fh = await loop.run_in_executor(None, open, path, "wb")
                try:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                        await loop.run_in_executor(None, fh.write, chunk)
                        size += len(chunk)
                finally:
                    await loop.run_in_executor(None, fh.close)
        except httpx.HTTPError as e:
            raise TransportError(_download_failure(f"{type(e).__name__}: {e}")) from e
        return size

    async def _fetch_inline(self, image: ImageRef) -> InlineMedia:
        try:
            response = await self._http.get(image.url, timeout=self._settings.media_fetch_timeout_seconds)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to fetch image {image.filename}: {type(e).__name__}: {e}") from e
        if not response.is_success:
            raise TransportError(
                f"Failed to fetch image {image.filename}: {response.status_code} {response.reason_phrase}"
            )
        return InlineMedia(data=response.content, mime_type=image.content_type, filename=image.filename)

    # ------------------------------------------------------------------
    # Record writes
    # ------------------------------------------------------------------

    async def _progress(self, ctx: _AttemptContext, status_text: str, **fields) -> None:
        """Intermediate write. A lost progress update is logged and tolerated."""
        try:
            await self._repository.update(
                ctx.job_id,
                status=JobStatus.PROCESSING,
                status_text=status_text,
                error_message=None,
                **fields,
            )
        except AnalyzerBaseException as e:
            logger.warning(f"Progress update failed: {e.message}", extra={**ctx.log_extra, "status_text": status_text})

    async def _complete(self, ctx: _AttemptContext, report: AnalysisReport) -> None:
        await self._repository.update(
            ctx.job_id,
            status=JobStatus.COMPLETED,
            status_text="Analysis completed",
            error_message=None,
            report=report,
        )
        ctx.terminal_written = True
        logger.info(
            "Analysis completed",
            extra={**ctx.log_extra, "duration_ms": report.processing_duration_ms, "text_length": len(report.text)},
        )

    async def _fail(self, ctx: _AttemptContext, message: str) -> None:
        if ctx.terminal_written:
            logger.error(f"Ignoring failure after terminal write: {message}", extra=ctx.log_extra)
            return
        try:
            await self._repository.update(
                ctx.job_id,
                status=JobStatus.FAILED,
                status_text=f"Analysis failed: {message[:100]}",
                error_message=message,
            )
            ctx.terminal_written = True
        except Exception as e:
            logger.error(
                f"Failed to record job failure: {e}",
                extra={**ctx.log_extra, "job_error": message},
            )


def _download_failure(detail: str) -> str:
    return (
        "Failed to download media from storage. Please check the media URL or storage "
        f"accessibility. Original error: {detail}"
    )
