import logging

from fastapi import APIRouter, Depends, HTTPException

from video_processor.dependencies.pipeline import get_pipeline
from video_processor.errors import CompositionValidationError, JobConflictError
from video_processor.models.process_models import (
    ProcessAcceptedResponse,
    ProcessRequest,
    dump_camel,
)
from video_processor.operators.pipeline_operator import VideoPipeline


router = APIRouter(tags=["process"])
logger = logging.getLogger(__name__)


@router.post("/process", status_code=202, response_model=ProcessAcceptedResponse)
async def process_video(
    request: ProcessRequest,
    pipeline: VideoPipeline = Depends(get_pipeline),
):
    try:
        job_id = pipeline.submit(request)
    except CompositionValidationError as e:
        logger.info("Rejected process request: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except JobConflictError as e:
        logger.info("Rejected duplicate job: %s", e)
        raise HTTPException(status_code=409, detail=str(e))
    return ProcessAcceptedResponse(job_id=job_id)


@router.get("/status/{job_id}")
async def get_job_status(
    job_id: str,
    pipeline: VideoPipeline = Depends(get_pipeline),
):
    record = pipeline.registry.get(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return dump_camel(record)
