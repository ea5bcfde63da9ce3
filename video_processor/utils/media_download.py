from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable

import requests

from video_processor import USER_AGENT
from video_processor.errors import AcquisitionError
from video_processor.models.composition_models import (
    IMAGE_EXTENSIONS,
    AudioAssets,
    Clip,
    url_extension,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def resolve_extension(url: str, is_image: bool = False, default: str = "mp4") -> str:
    """Pick a file extension for a download from its URL path.

    Falls back to ``jpg`` for images flagged by the caller and to
    ``default`` otherwise.
    """
    ext = url_extension(url)
    if ext and ext.isalnum() and len(ext) <= 5:
        return ext
    return "jpg" if is_image else default


def fetch_to_file(
    url: str,
    destination: Path,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
) -> Path:
    """Blocking streamed download. Run it in a worker thread.

    ``timeout`` bounds each socket read and the whole transfer. A partial
    file is removed on timeout.
    """
    deadline = clock() + timeout
    destination.parent.mkdir(parents=True, exist_ok=True)
    with requests.get(
        url,
        stream=True,
        timeout=timeout,
        headers={"User-Agent": USER_AGENT},
    ) as response:
        response.raise_for_status()
        try:
            with open(destination, "wb") as fh:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if clock() > deadline:
                        raise TimeoutError(f"Download timed out after {timeout:g}s")
                    if chunk:
                        fh.write(chunk)
        except TimeoutError:
            destination.unlink(missing_ok=True)
            raise
    return destination


async def download_file(url: str, destination: Path, timeout: float) -> Path:
    # fetch_to_file enforces the deadline itself; wait_for only unblocks the job.
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fetch_to_file, url, destination, timeout),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"Download timed out after {timeout:g}s") from exc


async def download_clips(
    clips: list[Clip], job_dir: Path, timeout: float, job_id: str = ""
) -> list[Clip]:
    """Download every clip into ``job_dir``. Any failure aborts the job."""
    for clip in clips:
        if not clip.source_url:
            raise AcquisitionError(clip.index, "missing video URL")
        ext = resolve_extension(clip.source_url, is_image=clip.is_image)
        destination = job_dir / f"clip_{clip.index}.{ext}"
        logger.info(
            "[%s] Downloading clip %d/%d (%s)",
            job_id,
            clip.index + 1,
            len(clips),
            clip.kind.value,
        )
        try:
            clip.local_path = await download_file(clip.source_url, destination, timeout)
        except (requests.RequestException, OSError) as exc:
            raise AcquisitionError(clip.index, str(exc)) from exc
    return clips


async def _download_optional(
    label: str, url: str, destination: Path, timeout: float, job_id: str
) -> Path | None:
    try:
        path = await download_file(url, destination, timeout)
    except (requests.RequestException, OSError) as exc:
        logger.warning("[%s] Failed to download %s, skipping: %s", job_id, label, exc)
        return None
    logger.info("[%s] Downloaded %s", job_id, label)
    return path


async def download_audio_assets(
    assets: AudioAssets, job_dir: Path, timeout: float, job_id: str = ""
) -> AudioAssets:
    """Download optional assets. Failed downloads are dropped from the result."""
    result = AudioAssets()

    music = assets.background_music
    if music is not None:
        path = await _download_optional(
            "background music",
            music.url,
            job_dir / f"bgm.{resolve_extension(music.url, default='mp3')}",
            timeout,
            job_id,
        )
        if path is not None:
            result.background_music = replace(music, local_path=path)

    narration = assets.narration
    if narration is not None:
        path = await _download_optional(
            "audio track",
            narration.url,
            job_dir / f"audio_track.{resolve_extension(narration.url, default='mp3')}",
            timeout,
            job_id,
        )
        if path is not None:
            result.narration = replace(narration, local_path=path)

    watermark = assets.watermark
    if watermark is not None:
        ext = resolve_extension(watermark.url, default="png")
        if ext not in IMAGE_EXTENSIONS:
            ext = "png"
        path = await _download_optional(
            "watermark", watermark.url, job_dir / f"watermark.{ext}", timeout, job_id
        )
        if path is not None:
            result.watermark = replace(watermark, local_path=path)

    return result
