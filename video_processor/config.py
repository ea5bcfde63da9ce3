from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import dotenv

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ProcessorSettings:
    host: str = "0.0.0.0"
    port: int = 3001
    temp_dir: Path = Path("/tmp/video-processing")
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    render_bucket: str = ""
    export_prefix: str = "exports"
    callback_secret: str | None = None
    download_timeout_seconds: int = 180
    job_retention_seconds: int = 3600
    registry_sweep_seconds: int = 60
    cross_layer_enabled: bool = True
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> ProcessorSettings:
        if env_file is not None:
            dotenv.load_dotenv(env_file)
        else:
            dotenv.load_dotenv()

        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3001, minimum=1),
            temp_dir=Path(os.getenv("TEMP_DIR", "/tmp/video-processing")),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
            render_bucket=os.getenv("GCS_RENDER_BUCKET", ""),
            export_prefix=os.getenv("EXPORT_PREFIX", "exports").strip("/") or "exports",
            callback_secret=os.getenv("CALLBACK_SECRET") or None,
            download_timeout_seconds=_env_int("DOWNLOAD_TIMEOUT_SECONDS", 180, minimum=1),
            job_retention_seconds=_env_int("JOB_RETENTION_SECONDS", 3600),
            registry_sweep_seconds=_env_int("REGISTRY_SWEEP_SECONDS", 60, minimum=1),
            cross_layer_enabled=_env_bool("CROSS_LAYER_ENABLED", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE", "").strip() or None,
        )
