"""In-process attempt queue on asyncio.

A fixed pool of worker tasks drains the queue, so at most ``max_workers``
attempts talk to storage and the engine at once. Submitted jobs wait as
``pending`` until a worker picks them up. No external broker is needed.
"""

import asyncio
import traceback
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import AttemptRecord, AttemptState, utcnow
from app.logger import logger

AttemptCallback = Callable[[AttemptRecord], Awaitable[None]]


class InProcessQueue(JobDispatcher):
    """Local async attempt queue with bounded concurrency."""

    def __init__(
        self,
        worker_fn: AttemptCallback,
        max_workers: int = 4,
        on_abandon: Optional[AttemptCallback] = None,
        retain_finished: int = 1000,
    ):
        """
        worker_fn: async callable(attempt: AttemptRecord) -> None
            Runs one attempt to its terminal job state. Expected to handle its
            own failures; anything that escapes is logged here.
        on_abandon: async callable(attempt: AttemptRecord) -> None
            Called on stop() for every attempt that never started, so its job
            can be finalized.
        retain_finished: how many finished attempts stay visible to
            get_status() and stats(); older ones are forgotten.
        """
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._attempts: Dict[str, AttemptRecord] = {}
        self._finished: Deque[str] = deque()
        self._retain_finished = max(0, retain_finished)
        self._worker_fn = worker_fn
        self._on_abandon = on_abandon
        self._max_workers = max(1, max_workers)
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def submit(self, attempt: AttemptRecord) -> str:
        self._attempts[attempt.attempt_id] = attempt
        await self._queue.put(attempt.attempt_id)
        return attempt.attempt_id

    async def get_status(self, attempt_id: str) -> Optional[AttemptRecord]:
        return self._attempts.get(attempt_id)

    def attempts_for_job(self, job_id: str) -> List[AttemptRecord]:
        return [a for a in self._attempts.values() if a.job_id == job_id]

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in AttemptState}
        for attempt in self._attempts.values():
            counts[attempt.state.value] += 1
        counts["workers"] = len(self._tasks)
        return counts

    async def start(self) -> None:
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(index)) for index in range(self._max_workers)
        ]

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self._abandon_queued()

    async def join(self) -> None:
        """Wait until every submitted attempt has been processed."""
        await self._queue.join()

    async def _abandon_queued(self) -> None:
        """Drain attempts no worker picked up and hand each to ``on_abandon``."""
        while True:
            try:
                attempt_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                attempt = self._attempts.get(attempt_id)
                if attempt is None or attempt.state != AttemptState.QUEUED:
                    continue
                attempt.state = AttemptState.ABANDONED
                attempt.finished_at = utcnow()
                logger.warning(
                    "Attempt abandoned at shutdown",
                    extra={"attempt_id": attempt_id, "job_id": attempt.job_id},
                )
                if self._on_abandon is not None:
                    try:
                        await self._on_abandon(attempt)
                    except Exception as e:
                        logger.error(
                            f"Failed to finalize abandoned attempt {attempt_id}: {e}",
                            extra={"attempt_id": attempt_id, "job_id": attempt.job_id},
                        )
                self._forget_later(attempt_id)
            finally:
                self._queue.task_done()

    def _forget_later(self, attempt_id: str) -> None:
        self._finished.append(attempt_id)
        while len(self._finished) > self._retain_finished:
            self._attempts.pop(self._finished.popleft(), None)

    async def _worker_loop(self, index: int) -> None:
        """Process attempts one at a time from the shared queue."""
        while self._running:
            try:
                attempt_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                attempt = self._attempts.get(attempt_id)
                if attempt is None:
                    continue

                attempt.state = AttemptState.RUNNING
                attempt.started_at = utcnow()
                try:
                    await self._worker_fn(attempt)
                    attempt.state = AttemptState.FINISHED
                except Exception as e:
                    attempt.state = AttemptState.CRASHED
                    attempt.error = f"{type(e).__name__}: {str(e)}"
                    logger.error(
                        f"Attempt {attempt_id} crashed in worker {index}: {e}",
                        extra={
                            "attempt_id": attempt_id,
                            "job_id": attempt.job_id,
                            "exc_traceback": traceback.format_exc(),
                        },
                    )
                finally:
                    attempt.finished_at = utcnow()
                    self._forget_later(attempt_id)
            finally:
                self._queue.task_done()
