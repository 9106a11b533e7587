import asyncio
import os

import pytest

from app.engine.base import IngestState
from app.exceptions import RateLimitedError, SubmissionValidationError, TransportError
from app.jobs.models import ImageRef, JobStatus, MediaKind
from app.jobs.orchestrator import JobOrchestrator

from conftest import FakeEngine, public_url

VIDEO_URL = public_url("videos/clip.mp4")

pytestmark = pytest.mark.unit


async def submit_video(orchestrator, url=VIDEO_URL):
    return await orchestrator.start_analysis(url, "clip.mp4", "video/mp4")


async def run_only_attempt(orchestrator, dispatcher):
    assert len(dispatcher.attempts) == 1
    await orchestrator.run_attempt(dispatcher.attempts.pop())


@pytest.mark.asyncio
async def test_submission_creates_pending_job_and_queues_attempt(orchestrator, repository, dispatcher):
    job_id = await submit_video(orchestrator)

    record = await repository.get(job_id)
    assert record.status == JobStatus.PENDING
    assert record.status_text == "Submitted"
    assert record.media_reference == VIDEO_URL
    assert record.error_message is None
    assert [a.job_id for a in dispatcher.attempts] == [job_id]


@pytest.mark.asyncio
async def test_invalid_submission_creates_no_record(orchestrator, repository, dispatcher):
    with pytest.raises(SubmissionValidationError):
        await orchestrator.start_analysis(VIDEO_URL, "clip.mp4", "image/png")
    with pytest.raises(SubmissionValidationError):
        await orchestrator.start_analysis("https://elsewhere.example/clip.mp4", "clip.mp4", "video/mp4")
    with pytest.raises(SubmissionValidationError):
        await orchestrator.start_analysis("", "clip.mp4", "video/mp4")

    assert await repository.list_recent() == []
    assert dispatcher.attempts == []


@pytest.mark.asyncio
async def test_video_happy_path_completes_with_report(orchestrator, repository, dispatcher, engine, origin, temp_store):
    origin.put(VIDEO_URL, b"video-bytes")
    engine.states = [IngestState.PROCESSING, IngestState.ACTIVE]
    engine.replies = ["动作识别: 深蹲"]

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.COMPLETED
    assert record.status_text == "Analysis completed"
    assert record.error_message is None
    assert record.engine_file_reference == "https://engine.test/files/abc"
    assert record.report.text == "动作识别: 深蹲"
    assert record.report.model_used == "fake-model"
    assert record.report.media_kind == MediaKind.VIDEO
    assert record.report.item_count == 1

    assert engine.ingested_bytes == [b"video-bytes"]
    _, mime_type, display_name = engine.ingested[0]
    assert (mime_type, display_name) == ("video/mp4", "clip.mp4")
    assert "运动视频" in engine.generate_calls[0][1]
    assert os.listdir(temp_store.base_dir) == []


@pytest.mark.asyncio
async def test_download_failure_fails_job_and_skips_engine(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"Forbidden", status=403)

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert record.error_message.startswith("Failed to download media from storage.")
    assert "403" in record.error_message
    assert record.status_text.startswith("Analysis failed: ")
    assert record.report is None
    assert engine.ingested == []
    assert engine.generate_calls == []


@pytest.mark.asyncio
async def test_engine_ingest_failure_is_reported(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"video")
    engine.states = [IngestState.PROCESSING, IngestState.FAILED]

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert "File processing failed" in record.error_message
    assert engine.generate_calls == []


@pytest.mark.asyncio
async def test_ingest_timeout_names_the_ceiling(repository, engine, media_store, temp_store, http_client, settings,
                                                dispatcher, origin):
    settings.ingest_ceiling_seconds = 0.05
    settings.ingest_poll_interval_seconds = 0.02
    engine.states = [IngestState.PROCESSING]
    origin.put(VIDEO_URL, b"video")
    orchestrator = JobOrchestrator(repository, engine, media_store, temp_store, http_client, settings, dispatcher)

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert "timeout" in record.error_message.lower()
    assert "0.05 seconds" in record.error_message
    assert "File processing failed" not in record.error_message


@pytest.mark.asyncio
async def test_rate_limit_is_retried_exactly_once(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"video")
    engine.replies = [RateLimitedError("429 RESOURCE_EXHAUSTED"), "第二次成功"]

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.COMPLETED
    assert record.report.text == "第二次成功"
    assert len(engine.generate_calls) == 2


@pytest.mark.asyncio
async def test_second_rate_limit_is_terminal(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"video")
    engine.replies = [RateLimitedError("throttled")]

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert record.error_message == "throttled"
    assert len(engine.generate_calls) == 2


@pytest.mark.asyncio
async def test_other_generate_failures_are_not_retried(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"video")
    engine.replies = [TransportError("Analysis engine request failed: 500")]

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert len(engine.generate_calls) == 1


@pytest.mark.asyncio
async def test_unexpected_exception_still_ends_failed(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"video")
    engine.replies = [KeyError("candidates")]

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert "KeyError" in record.error_message


@pytest.mark.asyncio
async def test_missing_engine_fails_job(repository, media_store, temp_store, http_client, settings, dispatcher):
    orchestrator = JobOrchestrator(repository, None, media_store, temp_store, http_client, settings, dispatcher)

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert record.error_message == "Analysis engine is not configured on server."


@pytest.mark.asyncio
async def test_cancellation_marks_job_failed(orchestrator, repository, dispatcher, engine, origin):
    origin.put(VIDEO_URL, b"video")
    engine.states = [IngestState.PROCESSING]

    job_id = await submit_video(orchestrator)
    task = asyncio.create_task(orchestrator.run_attempt(dispatcher.attempts.pop()))
    while engine.state_reads == 0:
        await asyncio.sleep(0.005)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert "interrupted" in record.error_message


@pytest.mark.asyncio
async def test_image_set_analysed_together(orchestrator, repository, dispatcher, engine, origin):
    images = [
        ImageRef(url=public_url(f"images/{n}.jpg"), filename=f"pose{n}.jpg", content_type="image/jpeg")
        for n in range(1, 4)
    ]
    for n, image in enumerate(images, start=1):
        origin.put(image.url, f"image-{n}".encode())

    job_id = await orchestrator.start_image_set_analysis(images)
    record = await repository.get(job_id)
    assert record.media_kind == MediaKind.IMAGE
    assert record.media_reference == images[0].url
    assert record.image_urls == [image.url for image in images]
    assert record.item_count == 3

    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.COMPLETED
    assert record.report.item_count == 3
    assert record.report.image_filenames == ["pose1.jpg", "pose2.jpg", "pose3.jpg"]
    assert engine.ingested == []
    assert len(engine.generate_calls) == 1
    media, prompt = engine.generate_calls[0]
    assert [item.data for item in media] == [b"image-1", b"image-2", b"image-3"]
    assert "3张图片对比" in prompt


@pytest.mark.asyncio
async def test_image_set_rejects_more_than_three(orchestrator, repository):
    images = [
        ImageRef(url=public_url(f"images/{n}.jpg"), filename=f"{n}.jpg", content_type="image/jpeg")
        for n in range(4)
    ]
    with pytest.raises(SubmissionValidationError):
        await orchestrator.start_image_set_analysis(images)
    assert await repository.list_recent() == []


@pytest.mark.asyncio
async def test_single_image_through_start_analysis(orchestrator, repository, dispatcher, origin, engine):
    url = public_url("images/one.png")
    origin.put(url, b"png")

    job_id = await orchestrator.start_analysis(url, "one.png", "image/png", media_kind=MediaKind.IMAGE)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.COMPLETED
    assert record.report.media_kind == MediaKind.IMAGE
    assert record.report.item_count == 1


@pytest.mark.asyncio
async def test_schedule_requires_dispatcher(repository, engine, media_store, temp_store, http_client, settings):
    orchestrator = JobOrchestrator(repository, engine, media_store, temp_store, http_client, settings)
    with pytest.raises(RuntimeError):
        await orchestrator.schedule_attempt("job-1")


def test_fake_engine_is_an_analysis_engine():
    assert FakeEngine().model_name == "fake-model"


class IngestRejectingEngine(FakeEngine):
    async def ingest(self, path, mime_type, display_name):
        raise TransportError("Failed to upload file to analysis engine: 400 INVALID_ARGUMENT")


@pytest.mark.asyncio
async def test_ingest_error_fails_job_and_cleans_temp(repository, media_store, temp_store, http_client, settings,
                                                       dispatcher, origin):
    origin.put(VIDEO_URL, b"video")
    engine = IngestRejectingEngine()
    orchestrator = JobOrchestrator(repository, engine, media_store, temp_store, http_client, settings, dispatcher)

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    record = await repository.get(job_id)
    assert record.status == JobStatus.FAILED
    assert "Failed to upload file to analysis engine" in record.error_message
    assert record.report is None
    assert engine.generate_calls == []
    assert os.listdir(temp_store.base_dir) == []


@pytest.mark.asyncio
async def test_failed_download_leaves_no_temp_files(orchestrator, repository, dispatcher, origin, temp_store):
    origin.put(VIDEO_URL, b"gone", status=404)

    job_id = await submit_video(orchestrator)
    await run_only_attempt(orchestrator, dispatcher)

    assert (await repository.get(job_id)).status == JobStatus.FAILED
    assert os.listdir(temp_store.base_dir) == []


@pytest.mark.asyncio
async def test_shutdown_fails_queued_jobs_so_they_can_be_retried(orchestrator, repository, engine, origin):
    from app.jobs.in_process_queue import InProcessQueue
    from app.jobs.retry import RetryController

    origin.put(VIDEO_URL, b"video")
    engine.states = [IngestState.PROCESSING]
    queue = InProcessQueue(worker_fn=orchestrator.run_attempt, max_workers=1, on_abandon=orchestrator.abandon_attempt)
    orchestrator.bind_dispatcher(queue)
    await queue.start()

    running_id = await submit_video(orchestrator)
    queued_id = await submit_video(orchestrator)
    while engine.state_reads == 0:
        await asyncio.sleep(0.005)
    await queue.stop()

    for job_id in (running_id, queued_id):
        record = await repository.get(job_id)
        assert record.status == JobStatus.FAILED
        assert "interrupted" in record.error_message

    result = await RetryController(repository, orchestrator).retry(queued_id)
    assert result.status == JobStatus.PENDING
