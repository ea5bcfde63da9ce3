from __future__ import annotations

import asyncio
import logging
import re
import shutil
import uuid
from pathlib import Path

from video_processor.config import ProcessorSettings
from video_processor.errors import (
    CompositionValidationError,
    JobConflictError,
    ProcessingError,
)
from video_processor.models.composition_models import Composition, resolve_composition
from video_processor.models.job_models import JobRecord, JobStage, JobStatus
from video_processor.models.process_models import ProcessRequest
from video_processor.operators.job_registry import JobRegistry
from video_processor.utils.cross_layer import XfadeCrossLayerStrategy
from video_processor.utils.ffmpeg_builder import (
    CrossLayerStrategy,
    InputMap,
    synthesize_filter_graph,
)
from video_processor.utils.ffmpeg_executor import (
    build_ffmpeg_args,
    encoding_progress,
    run_ffmpeg,
)
from video_processor.utils.gcs_utils import GcsUploader, LocalUploader, Uploader
from video_processor.utils.media_download import download_audio_assets, download_clips
from video_processor.utils.media_probe import probe_clips
from video_processor.utils.webhook import send_callback

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,128}")


def default_uploader(settings: ProcessorSettings) -> Uploader:
    if settings.render_bucket:
        return GcsUploader(settings.render_bucket, settings.export_prefix)
    return LocalUploader(settings.temp_dir / "outputs", settings.export_prefix)


class VideoPipeline:
    """Runs jobs through acquisition, probing, synthesis, encoding and delivery.

    Each job runs in its own task with a single failure boundary: whatever
    goes wrong ends up as a ``failed`` record, never as a crashed process.
    """

    def __init__(
        self,
        settings: ProcessorSettings,
        registry: JobRegistry | None = None,
        uploader: Uploader | None = None,
        cross_layer: CrossLayerStrategy | None = None,
    ):
        self.settings = settings
        self.registry = registry or JobRegistry(settings.job_retention_seconds)
        self.uploader = uploader or default_uploader(settings)
        if cross_layer is None and settings.cross_layer_enabled:
            cross_layer = XfadeCrossLayerStrategy()
        self.cross_layer = cross_layer
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def submit(self, request: ProcessRequest) -> str:
        """Validate a request, register the job and start it in the background.

        Raises CompositionValidationError or JobConflictError before anything
        is registered.
        """
        composition = resolve_composition(request)
        job_id = request.job_id or uuid.uuid4().hex
        self.job_directory(job_id)
        existing = self.registry.get(job_id)
        if existing is not None and not existing.status.is_terminal:
            raise JobConflictError(job_id)
        self.registry.create(job_id)
        logger.info("[%s] Starting job with %d clips", job_id, len(composition.clips))

        task = asyncio.create_task(self.run(job_id, composition), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def job_directory(self, job_id: str) -> Path:
        """Working directory for a job, always a direct child of ``temp_dir``."""
        if not JOB_ID_PATTERN.fullmatch(job_id):
            raise CompositionValidationError(
                f"Invalid jobId {job_id!r}: use 1-128 letters, digits, '-' or '_'"
            )
        root = self.settings.temp_dir.resolve()
        job_dir = (root / job_id).resolve()
        if job_dir.parent != root:
            raise CompositionValidationError(f"Invalid jobId {job_id!r}")
        return job_dir

    async def run(self, job_id: str, composition: Composition) -> JobRecord:
        job_dir = self.job_directory(job_id)
        if self.registry.get(job_id) is None:
            self.registry.create(job_id)

        try:
            try:
                job_dir.mkdir(parents=True, exist_ok=True)
                download_url = await self._process(job_id, composition, job_dir)
            except ProcessingError as e:
                logger.error("[%s] Job failed: %s", job_id, e)
                record = self.registry.fail(job_id, str(e))
            except Exception as e:
                logger.exception("[%s] Unexpected error while processing job", job_id)
                record = self.registry.fail(job_id, str(e) or e.__class__.__name__)
            else:
                record = self.registry.complete(job_id, download_url)
                logger.info("[%s] Job completed: %s", job_id, download_url)

            await self._notify(composition.request.callback_url, record)
        finally:
            self._cleanup(job_id, job_dir)
        return record

    async def _process(self, job_id: str, composition: Composition, job_dir: Path) -> str:
        settings = self.settings
        registry = self.registry

        registry.update_stage(job_id, JobStage.DOWNLOADING)
        await download_clips(
            composition.clips, job_dir, settings.download_timeout_seconds, job_id
        )

        registry.update_stage(job_id, JobStage.DOWNLOADING_AUDIO)
        if not composition.assets.is_empty:
            composition.assets = await download_audio_assets(
                composition.assets, job_dir, settings.download_timeout_seconds, job_id
            )

        registry.update_stage(job_id, JobStage.ANALYZING)
        await probe_clips(composition.clips, settings.ffprobe_bin, job_id)

        registry.update_stage(job_id, JobStage.BUILDING_FILTERS)
        input_map = InputMap.from_composition(composition)
        graph = synthesize_filter_graph(
            composition, input_map, cross_layer=self.cross_layer, job_id=job_id
        )
        output_format = composition.settings.output_format
        output_path = job_dir / f"output.{output_format}"
        args = build_ffmpeg_args(
            input_map, graph, output_path, composition.settings.quality
        )

        registry.update_stage(job_id, JobStage.ENCODING)
        expected = composition.total_duration

        def on_progress(seconds: float) -> None:
            registry.update_progress(job_id, encoding_progress(seconds, expected))

        await run_ffmpeg(args, output_path, settings.ffmpeg_bin, on_progress)

        registry.update_stage(job_id, JobStage.UPLOADING)
        return await self.uploader.upload(job_id, output_path, output_format)

    async def _notify(self, callback_url: str | None, record: JobRecord) -> None:
        if not callback_url:
            return
        payload: dict[str, str] = {"jobId": record.job_id, "status": record.status.value}
        if record.status == JobStatus.COMPLETED and record.download_url:
            payload["downloadUrl"] = record.download_url
        elif record.error:
            payload["error"] = record.error
        await send_callback(callback_url, payload, self.settings.callback_secret)

    def _cleanup(self, job_id: str, job_dir: Path) -> None:
        try:
            shutil.rmtree(job_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("[%s] Could not remove %s: %s", job_id, job_dir, exc)
            return
        logger.info("[%s] Cleaned up %s", job_id, job_dir)
