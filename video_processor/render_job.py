#!/usr/bin/env python3
"""Run a single processing job locally, without the HTTP service."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from video_processor.config import ProcessorSettings
from video_processor.errors import CompositionValidationError
from video_processor.main import configure_logging
from video_processor.models.composition_models import resolve_composition
from video_processor.models.job_models import JobStatus
from video_processor.models.process_models import ProcessRequest, dump_camel
from video_processor.operators.pipeline_operator import VideoPipeline
from video_processor.utils.gcs_utils import download_text

logger = logging.getLogger("video_processor.render_job")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render one video job")
    parser.add_argument(
        "--payload",
        required=True,
        help="GCS path or local path to a /process request body (JSON)",
    )
    parser.add_argument(
        "--job-id",
        help="Job ID to use instead of the payload's jobId",
    )
    return parser.parse_args(argv)


def load_payload(payload_path: str) -> dict:
    if payload_path.startswith("gs://"):
        logger.info("Downloading payload from %s", payload_path)
        return json.loads(download_text(payload_path))

    path = Path(payload_path)
    if not path.exists():
        raise ValueError(f"Payload file not found: {payload_path}")
    return json.loads(path.read_text(encoding="utf-8"))


async def render(request: ProcessRequest, settings: ProcessorSettings) -> dict:
    pipeline = VideoPipeline(settings)
    composition = resolve_composition(request)
    job_id = request.job_id or "local"
    record = await pipeline.run(job_id, composition)
    return dump_camel(record)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = ProcessorSettings.from_env()
    configure_logging(settings)

    try:
        request = ProcessRequest.model_validate(load_payload(args.payload))
        if args.job_id:
            request = request.model_copy(update={"job_id": args.job_id})
        result = asyncio.run(render(request, settings))
    except (ValueError, CompositionValidationError) as e:
        logger.error("Invalid payload: %s", e)
        return 2

    print(json.dumps(result, indent=2))
    return 0 if result.get("status") == JobStatus.COMPLETED.value else 1


if __name__ == "__main__":
    sys.exit(main())
