"""Analysis engine interface: ingest media, wait until usable, generate a report."""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from app.logger import logger


class IngestState(str, Enum):
    PROCESSING = "processing"
    ACTIVE = "active"
    FAILED = "failed"


class ReadyOutcome(str, Enum):
    READY = "ready"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class EngineFile:
    """Handle to media the engine has ingested."""
    name: str
    uri: str
    mime_type: str


@dataclass(frozen=True)
class InlineMedia:
    """Raw bytes sent with the generate request itself."""
    data: bytes
    mime_type: str
    filename: Optional[str] = None


EngineMedia = Union[EngineFile, List[InlineMedia]]


class AnalysisEngine(ABC):
    """Abstract interface for a remote generative analysis service."""

    model_name: str = ""

    @abstractmethod
    async def ingest(self, path: str, mime_type: str, display_name: str) -> EngineFile:
        """Upload a local file to the engine."""
        ...

    @abstractmethod
    async def get_state(self, file: EngineFile) -> IngestState:
        ...

    @abstractmethod
    async def generate(self, media: EngineMedia, prompt: str) -> str:
        """Return report text.

        Raises RateLimitedError when throttled and TransportError for other
        request failures.
        """
        ...

    async def await_ready(
        self,
        file: EngineFile,
        ceiling_seconds: float = 300.0,
        interval_seconds: float = 10.0,
    ) -> ReadyOutcome:
        """Poll ``get_state`` until active or failed, giving up after the ceiling."""
        started = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            state = await self.get_state(file)
            elapsed = time.monotonic() - started
            if state == IngestState.ACTIVE:
                logger.info(
                    f"Engine file {file.name} is active",
                    extra={"attempts": attempts, "wait_seconds": round(elapsed, 2)},
                )
                return ReadyOutcome.READY
            if state == IngestState.FAILED:
                logger.error(f"Engine reported ingest failure for {file.name}", extra={"attempts": attempts})
                return ReadyOutcome.FAILED
            if elapsed + interval_seconds > ceiling_seconds:
                logger.error(
                    f"Engine file {file.name} not ready after {elapsed:.1f}s",
                    extra={"attempts": attempts, "ceiling_seconds": ceiling_seconds},
                )
                return ReadyOutcome.TIMEOUT
            await asyncio.sleep(interval_seconds)
