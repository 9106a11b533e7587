"""Direct-to-storage uploads through a presigned PUT URL."""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

import httpx

from app.logger import logger

DEFAULT_CHUNK_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class UploadProgress:
    loaded: int
    total: int
    percentage: int
    speed_bytes_per_sec: float = 0.0
    eta_seconds: Optional[float] = None


ProgressCallback = Callable[[UploadProgress], None]


def _source_size(source: Union[str, bytes]) -> int:
    if isinstance(source, bytes):
        return len(source)
    return os.path.getsize(source)


async def _iter_chunks(
    source: Union[str, bytes],
    total: int,
    chunk_size: int,
    on_progress: Optional[ProgressCallback],
) -> AsyncIterator[bytes]:
    started = time.monotonic()
    loaded = 0

    def report():
        if on_progress is None:
            return
        elapsed = max(time.monotonic() - started, 1e-6)
        speed = loaded / elapsed
        remaining = total - loaded
        on_progress(
            UploadProgress(
                loaded=loaded,
                total=total,
                percentage=round(loaded * 100 / total) if total else 100,
                speed_bytes_per_sec=speed,
                eta_seconds=remaining / speed if speed > 0 else None,
            )
        )

    if isinstance(source, bytes):
        for offset in range(0, total, chunk_size):
            chunk = source[offset:offset + chunk_size]
            yield chunk
            loaded += len(chunk)
            report()
    else:
        loop = asyncio.get_running_loop()
        fh = await loop.run_in_executor(None, open, source, "rb")
        try:
            while True:
                chunk = await loop.run_in_executor(None, fh.read, chunk_size)
                if not chunk:
                    break
                yield chunk
                loaded += len(chunk)
                report()
        finally:
            await loop.run_in_executor(None, fh.close)


async def upload_to_storage(
    http_client: httpx.AsyncClient,
    upload_url: str,
    source: Union[str, bytes],
    content_type: str,
    on_progress: Optional[ProgressCallback] = None,
    timeout_seconds: float = 300.0,
    max_retries: int = 3,
    retry_delay_seconds: float = 1.0,
    chunk_size: int = DEFAULT_CHUNK_BYTES,
) -> bool:
    """PUT ``source`` (a file path or bytes) to ``upload_url``.

    The body is streamed in ``chunk_size`` pieces with an explicit
    Content-Length. Transport errors and 5xx replies are retried up to
    ``max_retries`` times with exponential backoff; a 4xx reply is final.
    Returns True on a 2xx reply.
    """
    total = _source_size(source)
    headers = {"Content-Type": content_type, "Content-Length": str(total)}

    for attempt in range(max_retries + 1):
        if attempt:
            delay = retry_delay_seconds * (2 ** (attempt - 1))
            logger.warning(f"Retrying storage upload in {delay:g}s", extra={"retry": attempt})
            await asyncio.sleep(delay)
        try:
            response = await http_client.put(
                upload_url,
                content=_iter_chunks(source, total, chunk_size, on_progress),
                headers=headers,
                timeout=timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Storage upload failed: {type(e).__name__}: {e}", extra={"retry": attempt})
            continue

        if response.is_success:
            logger.info("Storage upload completed", extra={"bytes": total})
            return True
        logger.warning(
            f"Storage upload rejected with status {response.status_code}",
            extra={"http_status_code": response.status_code, "retry": attempt},
        )
        if response.status_code < 500:
            return False

    return False
