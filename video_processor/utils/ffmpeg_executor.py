from __future__ import annotations

import asyncio
import logging
import math
import re
from pathlib import Path
from typing import Callable

from video_processor.errors import TranscodeError
from video_processor.models.job_models import (
    ENCODING_PROGRESS_END,
    ENCODING_PROGRESS_START,
)
from video_processor.models.process_models import QualityTier
from video_processor.utils.ffmpeg_builder import GraphResult, InputMap

logger = logging.getLogger(__name__)

QUALITY_PRESETS: dict[QualityTier, tuple[int, str]] = {
    QualityTier.HIGH: (18, "slow"),
    QualityTier.MEDIUM: (23, "medium"),
    QualityTier.LOW: (28, "fast"),
}

TIME_PATTERN = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
ERROR_MARKERS = ("Error", "Invalid", "No such")
MAX_ERROR_LINES = 10
MAX_STDERR_CHARS = 1_000_000
READ_CHUNK = 4096
FALLBACK_SECONDS_RATE = 3


def quality_options(quality: QualityTier) -> tuple[int, str]:
    """Return (crf, preset) for a quality tier."""
    return QUALITY_PRESETS.get(quality, QUALITY_PRESETS[QualityTier.HIGH])


def build_ffmpeg_args(
    input_map: InputMap,
    graph: GraphResult | None,
    output_path: Path,
    quality: QualityTier = QualityTier.HIGH,
) -> list[str]:
    """Assemble encoder arguments (without the binary name)."""
    args = ["-y", "-hide_banner", "-loglevel", "info"]
    for path in input_map.paths:
        args.extend(["-i", str(path)])

    if graph is not None and graph.filter_complex:
        args.extend(
            [
                "-filter_complex",
                graph.filter_complex,
                "-map",
                graph.video_output,
                "-map",
                graph.audio_output,
            ]
        )
    else:
        args.extend(["-map", "0:v", "-map", "0:a?"])

    crf, preset = quality_options(quality)
    args.extend(
        [
            "-c:v", "libx264",
            "-preset", preset,
            "-crf", str(crf),
            "-profile:v", "high",
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-b:a", "192k",
            "-ar", "48000",
            "-ac", "2",
            "-movflags", "+faststart",
            str(output_path),
        ]
    )
    return args


def parse_progress_time(text: str) -> float | None:
    """Return the last ``time=HH:MM:SS.xx`` value in ``text``, in seconds."""
    matches = TIME_PATTERN.findall(text)
    if not matches:
        return None
    hours, minutes, seconds = matches[-1]
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def encoding_progress(seconds: float, expected_duration: float | None = None) -> int:
    """Map encoder time onto the 40-85 job progress window."""
    span = ENCODING_PROGRESS_END - ENCODING_PROGRESS_START
    if expected_duration and expected_duration > 0:
        fraction = min(max(seconds / expected_duration, 0.0), 1.0)
        return ENCODING_PROGRESS_START + int(fraction * span)
    return ENCODING_PROGRESS_START + min(span, math.floor(seconds * FALLBACK_SECONDS_RATE))


def extract_error(stderr_text: str, returncode: int | None) -> str:
    lines = [
        line.strip()
        for line in stderr_text.splitlines()
        if any(marker in line for marker in ERROR_MARKERS)
    ]
    if lines:
        return "\n".join(lines[-MAX_ERROR_LINES:])
    return f"FFmpeg exited with code {returncode}"


async def run_ffmpeg(
    args: list[str],
    output_path: Path,
    ffmpeg_bin: str = "ffmpeg",
    on_progress: Callable[[float], None] | None = None,
) -> Path:
    """Run FFmpeg once and return the output path.

    Raises TranscodeError on spawn failure, non-zero exit or missing output.
    """
    logger.info("Executing FFmpeg...")
    logger.debug("Command: %s %s", ffmpeg_bin, " ".join(args))

    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_bin,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise TranscodeError(f"FFmpeg spawn error: {exc}") from exc

    stderr_text = ""
    carry = ""
    last_seconds = -1.0
    assert process.stderr is not None
    while True:
        chunk = await process.stderr.read(READ_CHUNK)
        if not chunk:
            break
        text = chunk.decode(errors="replace")
        stderr_text = (stderr_text + text)[-MAX_STDERR_CHARS:]

        # A time= token can be split across two reads.
        window = carry + text
        carry = window[-64:]
        seconds = parse_progress_time(window)
        if seconds is not None and seconds > last_seconds:
            last_seconds = seconds
            if on_progress is not None:
                on_progress(seconds)

    returncode = await process.wait()
    if returncode != 0:
        message = extract_error(stderr_text, returncode)
        logger.error("FFmpeg failed (exit %s): %s", returncode, message)
        raise TranscodeError(message)

    if not output_path.exists():
        raise TranscodeError("Output file was not created")

    logger.info("FFmpeg finished: %s", output_path.name)
    return output_path
