from __future__ import annotations


class ProcessingError(Exception):
    """Base for failures that end a job in the ``failed`` state."""

    category = "processing"


class CompositionValidationError(ProcessingError):
    category = "validation"


class AcquisitionError(ProcessingError):
    category = "acquisition"

    def __init__(self, clip_index: int, reason: str):
        self.clip_index = clip_index
        self.reason = reason
        super().__init__(f"Failed to download clip {clip_index}: {reason}")


class FilterGraphError(ProcessingError):
    category = "synthesis"


class TranscodeError(ProcessingError):
    category = "transcode"


class DeliveryError(ProcessingError):
    category = "delivery"


class JobConflictError(ProcessingError):
    category = "conflict"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already processing")
