"""
End-to-end renders through a real FFmpeg binary.

Skipped unless ffmpeg and ffprobe with libx264 are installed.
"""

import asyncio
import json
import shutil
import subprocess
from pathlib import Path

import pytest

from video_processor.models.composition_models import resolve_composition
from video_processor.models.job_models import JobStatus
from video_processor.models.process_models import ProcessRequest
from video_processor.operators.pipeline_operator import VideoPipeline
from video_processor.utils import media_download
from video_processor.utils.gcs_utils import LocalUploader


def _has_libx264() -> bool:
    if not (shutil.which("ffmpeg") and shutil.which("ffprobe")):
        return False
    result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-encoders"], capture_output=True, text=True
    )
    return "libx264" in result.stdout


pytestmark = pytest.mark.skipif(not _has_libx264(), reason="ffmpeg with libx264 required")


def _ffmpeg(*args: str) -> None:
    subprocess.run(["ffmpeg", "-y", "-hide_banner", "-loglevel", "error", *args], check=True)


def _duration(path: Path) -> float:
    result = subprocess.run(
        [
            "ffprobe", "-v", "error",
            "-show_entries", "format=duration",
            "-of", "json", str(path),
        ],
        capture_output=True,
        text=True,
        check=True,
    )
    return float(json.loads(result.stdout)["format"]["duration"])


@pytest.fixture(scope="module")
def media(tmp_path_factory):
    root = tmp_path_factory.mktemp("media")
    for name, seconds in (("a.mp4", 5), ("b.mp4", 10)):
        _ffmpeg(
            "-f", "lavfi", "-i", f"testsrc=size=640x360:rate=30:duration={seconds}",
            "-f", "lavfi", "-i", f"sine=frequency=440:duration={seconds}",
            "-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac", "-shortest",
            str(root / name),
        )
    _ffmpeg("-f", "lavfi", "-i", "color=c=blue:size=320x240", "-frames:v", "1", str(root / "c.png"))
    return root


@pytest.fixture
def local_fetch(monkeypatch, media):
    def _fetch(url, destination, timeout):
        shutil.copyfile(media / Path(url).name, destination)
        return destination

    monkeypatch.setattr(media_download, "fetch_to_file", _fetch)


def _render(settings, payload):
    pipeline = VideoPipeline(
        settings, uploader=LocalUploader(settings.temp_dir.parent / "outputs")
    )
    composition = resolve_composition(ProcessRequest.model_validate(payload))
    return asyncio.run(pipeline.run("e2e", composition))


def _output(record) -> Path:
    return Path(record.download_url.removeprefix("file://"))


def test_passthrough_render(settings, local_fetch):
    record = _render(settings, {"clips": [{"sourceUrl": "https://cdn.test/a.mp4"}]})

    assert record.status == JobStatus.COMPLETED, record.error
    assert _output(record).stat().st_size > 0


def test_trim_speed_and_image(settings, local_fetch):
    record = _render(
        settings,
        {
            "clips": [
                {
                    "sourceUrl": "https://cdn.test/a.mp4",
                    "trimStartSeconds": 1,
                    "trimEndSeconds": 4,
                    "fadeInSeconds": 0.5,
                },
                {"sourceUrl": "https://cdn.test/b.mp4", "speed": 2},
                {"sourceUrl": "https://cdn.test/c.png", "displayDuration": 4.5},
            ],
            "enhancements": {"fadeIn": True, "fadeOut": True},
            "videoSettings": {"resolution": "720p", "quality": "low"},
        },
    )

    assert record.status == JobStatus.COMPLETED, record.error
    assert _duration(_output(record)) == pytest.approx(12.5, abs=0.5)


def test_muted_and_sped_up_clips(settings, local_fetch):
    record = _render(
        settings,
        {
            "clips": [
                {"sourceUrl": "https://cdn.test/a.mp4"},
                {"sourceUrl": "https://cdn.test/a.mp4", "muted": True},
                {"sourceUrl": "https://cdn.test/a.mp4", "speed": 2},
            ]
        },
    )

    assert record.status == JobStatus.COMPLETED, record.error
    assert _duration(_output(record)) == pytest.approx(12.5, abs=0.5)
