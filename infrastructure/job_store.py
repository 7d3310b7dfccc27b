# infrastructure/job_store.py
"""In-memory ingestion job registry with size limit and timed eviction"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from config import settings
from core.domain import IngestionJob
from core.interfaces import IJobStore

logger = logging.getLogger(settings.LOGGER_NAME)


class InMemoryJobStore(IJobStore):
    """
    Job registry for the status polling endpoint.

    Auto-cleanup when max_entries is exceeded (finished jobs go first).
    Lost on server restart. Each job is written only by its own worker task.
    """

    def __init__(self, max_entries: int = settings.JOB_STORE_MAX_ENTRIES):
        self._jobs: Dict[str, IngestionJob] = {}
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._jobs)

    def _cleanup_if_full(self) -> None:
        """
        Remove oldest finished jobs when limit reached, down to half the limit.
        Pending/processing jobs go only if they alone exceed max_entries.
        """
        if len(self._jobs) <= self._max_entries:
            return

        keep = self._max_entries // 2
        oldest_first = sorted(self._jobs.values(), key=lambda job: job.created_at)
        finished = [job for job in oldest_first if job.status.is_terminal]
        for job in finished[:max(0, len(self._jobs) - keep)]:
            del self._jobs[job.id]

        remaining = [job for job in oldest_first if job.id in self._jobs]
        for job in remaining[:max(0, len(self._jobs) - self._max_entries)]:
            logger.warning(f"[JOBS] Evicting unfinished job {job.id} ({job.status.value})")
            del self._jobs[job.id]
        logger.info(f"[JOBS] Registry full, trimmed to {len(self._jobs)} jobs")

    async def put(self, job: IngestionJob) -> None:
        is_new = job.id not in self._jobs
        self._jobs[job.id] = job
        if is_new:
            self._cleanup_if_full()

    async def get(self, job_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(job_id)

    async def sweep(self, max_age_sec: float) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_sec)
        expired = [job_id for job_id, job in self._jobs.items() if job.created_at < cutoff]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"[JOBS] Swept {len(expired)} jobs older than {max_age_sec}s")
        return len(expired)
