"""
Job status records served by ``GET /status/{job_id}``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from video_processor.models.process_models import CamelModel


class JobStatus(str, Enum):
    """Lifecycle status of a job."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != JobStatus.PROCESSING


class JobStage(str, Enum):
    """Pipeline stage, in execution order."""

    INITIALIZING = "initializing"
    DOWNLOADING = "downloading"
    DOWNLOADING_AUDIO = "downloading_audio"
    ANALYZING = "analyzing"
    BUILDING_FILTERS = "building_filters"
    ENCODING = "encoding"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_PROGRESS: dict[JobStage, int] = {
    JobStage.INITIALIZING: 0,
    JobStage.DOWNLOADING: 5,
    JobStage.DOWNLOADING_AUDIO: 15,
    JobStage.ANALYZING: 25,
    JobStage.BUILDING_FILTERS: 35,
    JobStage.ENCODING: 40,
    JobStage.UPLOADING: 85,
    JobStage.COMPLETE: 100,
}

ENCODING_PROGRESS_START = STAGE_PROGRESS[JobStage.ENCODING]
ENCODING_PROGRESS_END = STAGE_PROGRESS[JobStage.UPLOADING]


class JobRecord(CamelModel):
    job_id: str
    status: JobStatus = JobStatus.PROCESSING
    stage: JobStage = JobStage.INITIALIZING
    progress: int = Field(default=0, ge=0, le=100)
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    download_url: str | None = None
