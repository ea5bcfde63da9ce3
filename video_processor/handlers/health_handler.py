import asyncio
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from video_processor import __version__
from video_processor.dependencies.pipeline import get_pipeline
from video_processor.operators.pipeline_operator import VideoPipeline


router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)

FEATURES = [
    "per-clip-fades",
    "per-clip-volume",
    "per-clip-speed",
    "per-clip-trim",
    "image-clips",
    "audio-mixing",
    "background-music",
    "aspect-ratio",
    "watermarks",
    "xfade-transitions",
    "cross-layer-transitions",
    "multi-track-timeline",
]


async def ffmpeg_version(ffmpeg_bin: str) -> str | None:
    try:
        proc = await asyncio.create_subprocess_exec(
            ffmpeg_bin,
            "-version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=10)
    except (OSError, asyncio.TimeoutError) as e:
        logger.warning("FFmpeg not accessible: %s", e)
        return None
    if proc.returncode != 0:
        return None
    lines = stdout.decode(errors="replace").splitlines()
    return lines[0] if lines else ""


@router.get("/health")
async def health(pipeline: VideoPipeline = Depends(get_pipeline)):
    ffmpeg_bin = pipeline.settings.ffmpeg_bin
    version = await ffmpeg_version(ffmpeg_bin)
    if version is None:
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": "FFmpeg not accessible"},
        )
    return {
        "status": "ok",
        "ffmpeg": ffmpeg_bin,
        "version": version,
        "service": __version__,
        "activeJobs": pipeline.registry.active_count(),
        "crossLayerEnabled": pipeline.cross_layer is not None,
        "features": FEATURES,
    }
