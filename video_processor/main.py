import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from video_processor import __version__
from video_processor.config import ProcessorSettings
from video_processor.handlers.health_handler import router as health_router
from video_processor.handlers.process_handler import router as process_router
from video_processor.operators.job_registry import JobRegistry
from video_processor.operators.pipeline_operator import VideoPipeline

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger(__name__)


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str = "INFO",
) -> None:
    logger_level_value = getattr(logging, level_name.upper(), logging.INFO)

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(logger_level_value)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    target_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_file_path.resolve())
        for handler in target_logger.handlers
    ):
        target_logger.addHandler(file_handler)
    target_logger.setLevel(logger_level_value)


def configure_logging(settings: ProcessorSettings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    if settings.log_file:
        _attach_file_handler("video_processor", Path(settings.log_file), settings.log_level)


async def sweep_registry(registry: JobRegistry, interval_seconds: float) -> None:
    """Drop expired job records until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        evicted = registry.sweep()
        if evicted:
            logger.info("Evicted %d expired job(s)", evicted)


def create_app(
    settings: ProcessorSettings | None = None,
    pipeline: VideoPipeline | None = None,
) -> FastAPI:
    settings = settings or ProcessorSettings.from_env()
    pipeline = pipeline or VideoPipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.temp_dir.mkdir(parents=True, exist_ok=True)
        sweep_task = asyncio.create_task(
            sweep_registry(pipeline.registry, settings.registry_sweep_seconds)
        )
        logger.info("Video processor %s ready, temp dir %s", __version__, settings.temp_dir)
        try:
            yield
        finally:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task

    app = FastAPI(title="Video Processor", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline

    app.include_router(health_router)
    app.include_router(process_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


def run() -> None:
    settings = ProcessorSettings.from_env()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
