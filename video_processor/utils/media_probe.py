from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from video_processor.models.composition_models import DEFAULT_PROBE, Clip, MediaProbe

logger = logging.getLogger(__name__)


def _parse_frame_rate(value: str | None) -> int | None:
    if not value or "/" not in value:
        return None
    num, _, den = value.partition("/")
    try:
        numerator, denominator = float(num), float(den)
    except ValueError:
        return None
    if denominator == 0 or numerator <= 0:
        return None
    return round(numerator / denominator)


def parse_probe_output(data: dict[str, Any]) -> MediaProbe:
    """Build a MediaProbe from ffprobe's JSON, filling gaps with defaults."""
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), {})
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    try:
        duration = float((data.get("format") or {}).get("duration", 0))
    except (TypeError, ValueError):
        duration = 0.0

    return MediaProbe(
        duration=duration if duration > 0 else DEFAULT_PROBE.duration,
        width=int(video.get("width") or DEFAULT_PROBE.width),
        height=int(video.get("height") or DEFAULT_PROBE.height),
        fps=_parse_frame_rate(video.get("r_frame_rate")) or DEFAULT_PROBE.fps,
        has_audio=has_audio,
    )


async def probe_media(path: Path, ffprobe_bin: str = "ffprobe") -> MediaProbe:
    """Inspect a media file. Never raises; returns defaults on any failure."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-show_entries",
        "format=duration:stream=width,height,codec_type,r_frame_rate",
        "-of",
        "json",
        str(path),
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as exc:
        logger.warning("ffprobe failed to start for %s: %s", path.name, exc)
        return DEFAULT_PROBE

    if proc.returncode != 0:
        logger.warning(
            "ffprobe exited with code %s for %s: %s",
            proc.returncode,
            path.name,
            stderr.decode(errors="replace").strip()[-200:],
        )
        return DEFAULT_PROBE

    try:
        data = json.loads(stdout.decode(errors="replace") or "{}")
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse ffprobe output for %s: %s", path.name, exc)
        return DEFAULT_PROBE
    if not isinstance(data, dict):
        return DEFAULT_PROBE
    return parse_probe_output(data)


async def probe_clips(
    clips: list[Clip], ffprobe_bin: str = "ffprobe", job_id: str = ""
) -> list[Clip]:
    for clip in clips:
        if clip.local_path is None:
            continue
        clip.probe = await probe_media(clip.local_path, ffprobe_bin)
        logger.info(
            "[%s] Clip %d: %.2fs, %dx%d, audio=%s",
            job_id,
            clip.index,
            clip.probe.duration,
            clip.probe.width,
            clip.probe.height,
            clip.probe.has_audio,
        )
    return clips
