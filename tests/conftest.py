"""Shared fixtures: in-memory store, scripted engine, mocked media origin."""

from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import httpx
import pytest

from app.config import Settings
from app.db.job_repository import InMemoryJobRepository
from app.engine.base import AnalysisEngine, EngineFile, EngineMedia, IngestState
from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import AttemptRecord
from app.jobs.orchestrator import JobOrchestrator
from app.storage.media_store import MediaStore
from app.storage.temp_media import TempMediaStore

PUBLIC_BASE = "https://pub-acct.r2.dev"


def public_url(key: str) -> str:
    return f"{PUBLIC_BASE}/{key}"


class FakeEngine(AnalysisEngine):
    """Scripted engine. ``states`` are returned in order (last one repeats);
    ``replies`` are returned or raised in order by ``generate``."""

    def __init__(self, states=None, replies=None, model_name: str = "fake-model"):
        self.model_name = model_name
        self.states: List[IngestState] = list(states or [IngestState.ACTIVE])
        self.replies: list = list(replies or ["分析报告"])
        self.ingested: List[Tuple[str, str, str]] = []
        self.ingested_bytes: List[bytes] = []
        self.generate_calls: List[Tuple[EngineMedia, str]] = []
        self.state_reads = 0

    async def ingest(self, path: str, mime_type: str, display_name: str) -> EngineFile:
        with open(path, "rb") as fh:
            self.ingested_bytes.append(fh.read())
        self.ingested.append((path, mime_type, display_name))
        return EngineFile(name="files/abc", uri="https://engine.test/files/abc", mime_type=mime_type)

    async def get_state(self, file: EngineFile) -> IngestState:
        self.state_reads += 1
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]

    async def generate(self, media: EngineMedia, prompt: str) -> str:
        self.generate_calls.append((media, prompt))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


class RecordingDispatcher(JobDispatcher):
    """Collects submitted attempts without running them."""

    def __init__(self):
        self.attempts: List[AttemptRecord] = []

    async def submit(self, attempt: AttemptRecord) -> str:
        self.attempts.append(attempt)
        return attempt.attempt_id

    async def get_status(self, attempt_id: str) -> Optional[AttemptRecord]:
        return next((a for a in self.attempts if a.attempt_id == attempt_id), None)

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class MediaOrigin:
    """Stand-in for the public storage origin, served through httpx.MockTransport."""

    def __init__(self):
        self.objects: Dict[str, Tuple[int, bytes]] = {}
        self.requests: List[httpx.Request] = []

    def put(self, url: str, body: bytes, status: int = 200) -> None:
        self.objects[url] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.objects.get(str(request.url), (404, b"NoSuchKey"))
        return httpx.Response(status, content=body)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        job_store_backend="memory",
        r2_account_id="acct",
        s3_bucket_name="bucket",
        s3_access_key_id="key",
        s3_secret_access_key="secret",
        gemini_api_key="test-key",
        rate_limit_backoff_seconds=0.0,
        ingest_ceiling_seconds=1.0,
        ingest_poll_interval_seconds=0.01,
        temp_media_dir=str(tmp_path / "media"),
    )


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://acct.r2.cloudflarestorage.com/bucket/key?X-Amz-Signature=sig"
    return client


@pytest.fixture
def media_store(settings, s3_client) -> MediaStore:
    return MediaStore(settings, s3_client=s3_client)


@pytest.fixture
def temp_store(settings) -> TempMediaStore:
    return TempMediaStore(settings.temp_media_dir)


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def origin() -> MediaOrigin:
    return MediaOrigin()


@pytest.fixture
async def http_client(origin):
    async with httpx.AsyncClient(transport=httpx.MockTransport(origin.handler)) as client:
        yield client


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def orchestrator(repository, engine, media_store, temp_store, http_client, settings, dispatcher) -> JobOrchestrator:
    return JobOrchestrator(
        repository=repository,
        engine=engine,
        media_store=media_store,
        temp_store=temp_store,
        http_client=http_client,
        settings=settings,
        dispatcher=dispatcher,
    )
