"""Job dispatcher interface for background analysis attempts."""

from abc import ABC, abstractmethod
from typing import Optional

from app.jobs.models import AttemptRecord


class JobDispatcher(ABC):
    """Abstract interface for running attempts outside the request that created them."""

    @abstractmethod
    async def submit(self, attempt: AttemptRecord) -> str:
        """Schedule an attempt. Returns attempt_id without waiting for it to run."""
        ...

    @abstractmethod
    async def get_status(self, attempt_id: str) -> Optional[AttemptRecord]:
        """Get current bookkeeping for an attempt."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
