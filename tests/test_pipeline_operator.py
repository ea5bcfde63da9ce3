"""
Tests for the job pipeline: stage ordering, the failure boundary and callbacks.
"""

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from video_processor.errors import (
    AcquisitionError,
    CompositionValidationError,
    JobConflictError,
)
from video_processor.models.composition_models import MediaProbe, resolve_composition
from video_processor.models.job_models import JobStage, JobStatus
from video_processor.models.process_models import ProcessRequest
from video_processor.operators import pipeline_operator
from video_processor.operators.pipeline_operator import VideoPipeline, default_uploader
from video_processor.utils.gcs_utils import GcsUploader, LocalUploader


class FakeUploader:
    def __init__(self):
        self.uploads = []

    async def upload(self, job_id: str, path: Path, output_format: str) -> str:
        self.uploads.append((job_id, path.name, path.read_bytes()))
        return f"https://cdn.test/{job_id}/video.{output_format}"


@pytest.fixture
def callbacks(monkeypatch):
    sent = []

    async def _send(url, payload, secret=None):
        sent.append((url, payload, secret))
        return True

    monkeypatch.setattr(pipeline_operator, "send_callback", _send)
    return sent


@pytest.fixture
def fake_media(monkeypatch):
    """Stub out downloads, probing and encoding; keeps the encoder arguments."""
    seen = {"args": None}

    async def _download(clips, job_dir, timeout, job_id=""):
        for clip in clips:
            clip.local_path = job_dir / f"clip_{clip.index}.mp4"
            clip.local_path.write_bytes(b"clip")

    async def _probe(clips, ffprobe_bin="ffprobe", job_id=""):
        for clip in clips:
            clip.probe = MediaProbe(duration=4.0, has_audio=True)

    async def _ffmpeg(args, output_path, ffmpeg_bin="ffmpeg", on_progress=None):
        seen["args"] = args
        output_path.write_bytes(b"rendered")
        on_progress(2.0)
        return output_path

    monkeypatch.setattr(pipeline_operator, "download_clips", _download)
    monkeypatch.setattr(pipeline_operator, "probe_clips", _probe)
    monkeypatch.setattr(pipeline_operator, "run_ffmpeg", _ffmpeg)
    return seen


def _composition(payload):
    return resolve_composition(ProcessRequest.model_validate(payload))


TWO_CLIPS = {
    "clips": [
        {"sourceUrl": "https://cdn.test/a.mp4"},
        {"sourceUrl": "https://cdn.test/b.mp4", "speed": 2},
    ],
    "callbackUrl": "https://hooks.test/done",
}


# =============================================================================
# SUCCESS
# =============================================================================


class TestSuccessfulJob:
    def test_completes_and_delivers(self, settings, fake_media, callbacks):
        uploader = FakeUploader()
        pipeline = VideoPipeline(settings, uploader=uploader)

        record = asyncio.run(pipeline.run("job-1", _composition(TWO_CLIPS)))

        assert record.status == JobStatus.COMPLETED
        assert record.stage == JobStage.COMPLETE
        assert record.progress == 100
        assert record.download_url == "https://cdn.test/job-1/video.mp4"
        assert uploader.uploads == [("job-1", "output.mp4", b"rendered")]
        assert callbacks == [
            (
                "https://hooks.test/done",
                {
                    "jobId": "job-1",
                    "status": "completed",
                    "downloadUrl": "https://cdn.test/job-1/video.mp4",
                },
                None,
            )
        ]

    def test_encoder_receives_filter_graph(self, settings, fake_media, callbacks):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        asyncio.run(pipeline.run("job-1", _composition(TWO_CLIPS)))

        args = fake_media["args"]
        assert "-filter_complex" in args
        assert args[-1].endswith("output.mp4")

    def test_job_directory_removed(self, settings, fake_media, callbacks):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        asyncio.run(pipeline.run("job-1", _composition(TWO_CLIPS)))
        assert not (settings.temp_dir / "job-1").exists()

    def test_no_callback_without_url(self, settings, fake_media, callbacks):
        payload = {"clips": [{"sourceUrl": "https://cdn.test/a.mp4"}]}
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        asyncio.run(pipeline.run("job-1", _composition(payload)))
        assert callbacks == []

    def test_callback_carries_secret(self, settings, fake_media, callbacks):
        settings = replace(settings, callback_secret="s3cret")
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        asyncio.run(pipeline.run("job-1", _composition(TWO_CLIPS)))
        assert callbacks[0][2] == "s3cret"


# =============================================================================
# FAILURE
# =============================================================================


class TestFailedJob:
    def test_acquisition_failure(self, settings, monkeypatch, callbacks):
        async def _download(clips, job_dir, timeout, job_id=""):
            raise AcquisitionError(0, "404 Not Found")

        monkeypatch.setattr(pipeline_operator, "download_clips", _download)
        pipeline = VideoPipeline(settings, uploader=FakeUploader())

        record = asyncio.run(pipeline.run("job-2", _composition(TWO_CLIPS)))

        assert record.status == JobStatus.FAILED
        assert record.stage == JobStage.FAILED
        assert record.progress == 5
        assert record.error == "Failed to download clip 0: 404 Not Found"
        assert not (settings.temp_dir / "job-2").exists()
        assert callbacks[0][1] == {
            "jobId": "job-2",
            "status": "failed",
            "error": "Failed to download clip 0: 404 Not Found",
        }

    def test_unexpected_error_is_contained(self, settings, fake_media, callbacks):
        class BrokenUploader:
            async def upload(self, job_id, path, output_format):
                raise RuntimeError("disk on fire")

        pipeline = VideoPipeline(settings, uploader=BrokenUploader())
        record = asyncio.run(pipeline.run("job-3", _composition(TWO_CLIPS)))

        assert record.status == JobStatus.FAILED
        assert record.error == "disk on fire"
        assert record.progress == 85


# =============================================================================
# SUBMISSION
# =============================================================================


class TestSubmit:
    def test_submit_runs_in_background(self, settings, fake_media, callbacks):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())

        async def _scenario():
            job_id = pipeline.submit(
                ProcessRequest.model_validate({**TWO_CLIPS, "jobId": "job-4"})
            )
            assert pipeline.registry.get(job_id).status == JobStatus.PROCESSING
            await pipeline.wait_idle()
            return job_id

        job_id = asyncio.run(_scenario())
        assert job_id == "job-4"
        assert pipeline.registry.get(job_id).status == JobStatus.COMPLETED
        assert pipeline.pending_tasks == 0

    def test_generated_job_id(self, settings, fake_media, callbacks):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())

        async def _scenario():
            job_id = pipeline.submit(ProcessRequest.model_validate(TWO_CLIPS))
            await pipeline.wait_idle()
            return job_id

        job_id = asyncio.run(_scenario())
        assert len(job_id) == 32
        assert job_id in pipeline.registry

    def test_invalid_request_registers_nothing(self, settings):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        with pytest.raises(CompositionValidationError):
            pipeline.submit(ProcessRequest.model_validate({"clips": []}))
        assert len(pipeline.registry) == 0


# =============================================================================
# JOB ISOLATION
# =============================================================================


class TestJobIsolation:
    @pytest.fixture
    def outside_dir(self, tmp_path):
        victim = tmp_path / "victim"
        victim.mkdir()
        (victim / "keep.txt").write_text("keep", encoding="utf-8")
        return victim

    def test_path_job_ids_never_touch_other_directories(
        self, settings, monkeypatch, callbacks, outside_dir
    ):
        async def _download(clips, job_dir, timeout, job_id=""):
            raise AcquisitionError(0, "404 Not Found")

        monkeypatch.setattr(pipeline_operator, "download_clips", _download)
        pipeline = VideoPipeline(settings, uploader=FakeUploader())

        for job_id in (str(outside_dir), "../victim"):
            with pytest.raises(CompositionValidationError, match="Invalid jobId"):
                asyncio.run(pipeline.run(job_id, _composition(TWO_CLIPS)))

        assert (outside_dir / "keep.txt").read_text(encoding="utf-8") == "keep"
        assert len(pipeline.registry) == 0
        assert callbacks == []

    @pytest.mark.parametrize("job_id", ["../victim", "/tmp/victim", "a/b", "..", "x" * 129, "ok\n"])
    def test_submit_rejects_unsafe_job_ids(self, settings, job_id):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        request = ProcessRequest.model_validate({**TWO_CLIPS, "jobId": job_id})
        with pytest.raises(CompositionValidationError, match="Invalid jobId"):
            pipeline.submit(request)
        assert len(pipeline.registry) == 0

    def test_job_directory_is_child_of_temp_dir(self, settings):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        job_dir = pipeline.job_directory("job_A-1")
        assert job_dir.parent == settings.temp_dir.resolve()
        assert job_dir.name == "job_A-1"

    def test_running_job_id_is_rejected(self, settings):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        pipeline.registry.create("dup")
        pipeline.registry.update_stage("dup", JobStage.ENCODING)
        pipeline.registry.update_progress("dup", 70)

        with pytest.raises(JobConflictError, match="dup"):
            pipeline.submit(ProcessRequest.model_validate({**TWO_CLIPS, "jobId": "dup"}))

        record = pipeline.registry.get("dup")
        assert record.stage == JobStage.ENCODING
        assert record.progress == 70
        assert pipeline.pending_tasks == 0

    def test_finished_job_id_can_be_reused(self, settings, fake_media, callbacks):
        pipeline = VideoPipeline(settings, uploader=FakeUploader())
        pipeline.registry.create("again")
        pipeline.registry.fail("again", "boom")

        async def _scenario():
            pipeline.submit(ProcessRequest.model_validate({**TWO_CLIPS, "jobId": "again"}))
            await pipeline.wait_idle()

        asyncio.run(_scenario())
        record = pipeline.registry.get("again")
        assert record.status == JobStatus.COMPLETED
        assert record.error is None


class TestConfiguration:
    def test_local_uploader_without_bucket(self, settings):
        assert isinstance(default_uploader(settings), LocalUploader)

    def test_gcs_uploader_with_bucket(self, settings):
        settings = replace(settings, render_bucket="renders")
        assert isinstance(default_uploader(settings), GcsUploader)

    def test_cross_layer_toggle(self, settings):
        assert VideoPipeline(settings).cross_layer is not None
        disabled = replace(settings, cross_layer_enabled=False)
        assert VideoPipeline(disabled).cross_layer is None
