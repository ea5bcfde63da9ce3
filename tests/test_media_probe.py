"""
Tests for media probing and its fallback defaults.
"""

import asyncio
import json

import pytest

from video_processor.models.composition_models import DEFAULT_PROBE, Clip
from video_processor.utils import media_probe
from video_processor.utils.media_probe import parse_probe_output, probe_clips, probe_media


class FakeProcess:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode

    async def communicate(self):
        return self._stdout, self._stderr


def _fake_exec(process: FakeProcess, calls: list | None = None):
    async def _exec(*cmd, **kwargs):
        if calls is not None:
            calls.append(cmd)
        return process

    return _exec


PROBE_JSON = {
    "streams": [
        {"codec_type": "video", "width": 1280, "height": 720, "r_frame_rate": "30000/1001"},
        {"codec_type": "audio", "r_frame_rate": "0/0"},
    ],
    "format": {"duration": "12.480000"},
}


class TestParseProbeOutput:
    def test_full_output(self):
        probe = parse_probe_output(PROBE_JSON)
        assert probe.duration == pytest.approx(12.48)
        assert (probe.width, probe.height) == (1280, 720)
        assert probe.fps == 30
        assert probe.has_audio

    def test_missing_fields_use_defaults(self):
        probe = parse_probe_output({"streams": [{"codec_type": "video"}]})
        assert probe.duration == DEFAULT_PROBE.duration
        assert (probe.width, probe.height) == (1920, 1080)
        assert probe.fps == 30
        assert not probe.has_audio

    def test_bad_duration(self):
        probe = parse_probe_output({"format": {"duration": "N/A"}})
        assert probe.duration == DEFAULT_PROBE.duration


class TestProbeMedia:
    def test_success(self, monkeypatch, tmp_path):
        calls = []
        monkeypatch.setattr(
            media_probe.asyncio,
            "create_subprocess_exec",
            _fake_exec(FakeProcess(stdout=json.dumps(PROBE_JSON).encode()), calls),
        )
        probe = asyncio.run(probe_media(tmp_path / "clip_0.mp4", "ffprobe"))
        assert probe.has_audio
        cmd = calls[0]
        assert cmd[0] == "ffprobe"
        assert "format=duration:stream=width,height,codec_type,r_frame_rate" in cmd
        assert cmd[-1].endswith("clip_0.mp4")

    def test_nonzero_exit_falls_back(self, monkeypatch, tmp_path):
        monkeypatch.setattr(
            media_probe.asyncio,
            "create_subprocess_exec",
            _fake_exec(FakeProcess(stderr=b"Invalid data found", returncode=1)),
        )
        assert asyncio.run(probe_media(tmp_path / "x.mp4")) == DEFAULT_PROBE

    def test_unparseable_output_falls_back(self, monkeypatch, tmp_path):
        monkeypatch.setattr(
            media_probe.asyncio,
            "create_subprocess_exec",
            _fake_exec(FakeProcess(stdout=b"{not json")),
        )
        assert asyncio.run(probe_media(tmp_path / "x.mp4")) == DEFAULT_PROBE

    def test_missing_binary_falls_back(self, tmp_path):
        probe = asyncio.run(probe_media(tmp_path / "x.mp4", "ffprobe-binary-that-does-not-exist"))
        assert probe == DEFAULT_PROBE


def test_probe_clips_skips_undownloaded(monkeypatch, tmp_path):
    monkeypatch.setattr(
        media_probe.asyncio,
        "create_subprocess_exec",
        _fake_exec(FakeProcess(stdout=json.dumps(PROBE_JSON).encode())),
    )
    clips = [
        Clip(index=0, source_url="https://cdn.test/a.mp4", local_path=tmp_path / "clip_0.mp4"),
        Clip(index=1, source_url="https://cdn.test/b.mp4"),
    ]
    asyncio.run(probe_clips(clips))
    assert clips[0].probe.duration == pytest.approx(12.48)
    assert clips[1].probe == DEFAULT_PROBE
