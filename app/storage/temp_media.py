"""Transient local copies of source media, owned by one processing attempt."""

import os
import re
import shutil
import time
from typing import Optional

from app.logger import logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class TempMediaStore:
    """Hands out per-attempt scratch paths and removes them, with TTL sweeping for leftovers."""

    def __init__(self, base_dir: str, ttl_hours: int = 2):
        self._base_dir = base_dir
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def get_attempt_path(self, job_id: str, attempt_id: str, filename: str) -> str:
        """Path for an attempt's download; the directory is created on demand."""
        attempt_dir = os.path.join(self._base_dir, f"{job_id}_{attempt_id}")
        os.makedirs(attempt_dir, exist_ok=True)
        safe_name = _UNSAFE_CHARS.sub("_", os.path.basename(filename or "")) or "media"
        return os.path.join(attempt_dir, safe_name)

    def release(self, path: Optional[str]) -> bool:
        """Delete an attempt's file and its directory. Failures are logged, never raised."""
        if not path:
            return True
        attempt_dir = os.path.dirname(path)
        try:
            if os.path.exists(path):
                os.remove(path)
            if attempt_dir.startswith(self._base_dir) and os.path.isdir(attempt_dir):
                shutil.rmtree(attempt_dir)
            return True
        except OSError as exc:
            logger.warning(f"Failed to clean up temporary media file {path}: {exc}")
            return False

    def cleanup_expired(self) -> int:
        """Remove attempt directories older than TTL. Returns count of removed dirs."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            attempt_dir = os.path.join(self._base_dir, entry)
            if not os.path.isdir(attempt_dir):
                continue
            if now - os.path.getmtime(attempt_dir) > self._ttl_seconds:
                shutil.rmtree(attempt_dir, ignore_errors=True)
                removed += 1
        return removed
