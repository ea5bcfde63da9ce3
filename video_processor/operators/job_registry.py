from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from video_processor.models.job_models import (
    STAGE_PROGRESS,
    JobRecord,
    JobStage,
    JobStatus,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(KeyError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """In-memory job records keyed by job id.

    All mutation happens on the event loop thread, so a plain dict gives
    per-key atomic reads and writes. Terminal records are kept for
    ``retention_seconds`` and then dropped by ``sweep``.
    """

    def __init__(
        self,
        retention_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._records: dict[str, JobRecord] = {}
        self._expires_at: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, job_id: str) -> bool:
        return self.get(job_id) is not None

    def create(self, job_id: str) -> JobRecord:
        now = _utcnow()
        record = JobRecord(job_id=job_id, started_at=now, updated_at=now)
        self._records[job_id] = record
        self._expires_at.pop(job_id, None)
        return record

    def get(self, job_id: str) -> JobRecord | None:
        expires = self._expires_at.get(job_id)
        if expires is not None and self._clock() >= expires:
            self._evict(job_id)
            return None
        return self._records.get(job_id)

    def _require(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def _merge(self, job_id: str, **changes: Any) -> JobRecord:
        current = self._require(job_id)
        if "progress" in changes:
            changes["progress"] = max(current.progress, int(changes["progress"]))
        changes["updated_at"] = _utcnow()
        record = current.model_copy(update=changes)
        self._records[job_id] = record
        return record

    def update_stage(
        self, job_id: str, stage: JobStage, progress: int | None = None
    ) -> JobRecord:
        if progress is None:
            progress = STAGE_PROGRESS.get(stage, 0)
        record = self._merge(
            job_id, status=JobStatus.PROCESSING, stage=stage, progress=progress
        )
        logger.info("[%s] Stage: %s (%s%%)", job_id, stage.value, record.progress)
        return record

    def update_progress(self, job_id: str, progress: int) -> JobRecord | None:
        """Record encoder progress; ignored outside the encoding stage."""
        current = self._records.get(job_id)
        if current is None or current.stage != JobStage.ENCODING:
            return None
        if progress <= current.progress:
            return current
        return self._merge(job_id, progress=min(progress, 100))

    def complete(self, job_id: str, download_url: str) -> JobRecord:
        record = self._merge(
            job_id,
            status=JobStatus.COMPLETED,
            stage=JobStage.COMPLETE,
            progress=100,
            download_url=download_url,
            completed_at=_utcnow(),
        )
        self._schedule_expiry(job_id)
        return record

    def fail(self, job_id: str, error: str) -> JobRecord:
        if job_id not in self._records:
            self.create(job_id)
        record = self._merge(
            job_id,
            status=JobStatus.FAILED,
            stage=JobStage.FAILED,
            error=error,
            completed_at=_utcnow(),
        )
        self._schedule_expiry(job_id)
        return record

    def active_count(self) -> int:
        return sum(
            1 for record in self._records.values() if not record.status.is_terminal
        )

    def sweep(self) -> int:
        now = self._clock()
        expired = [job_id for job_id, at in self._expires_at.items() if now >= at]
        for job_id in expired:
            self._evict(job_id)
        if expired:
            logger.debug("Evicted %d expired job records", len(expired))
        return len(expired)

    def _schedule_expiry(self, job_id: str) -> None:
        self._expires_at[job_id] = self._clock() + self.retention_seconds

    def _evict(self, job_id: str) -> None:
        self._records.pop(job_id, None)
        self._expires_at.pop(job_id, None)
