from fastapi import Request

from video_processor.operators.pipeline_operator import VideoPipeline


def get_pipeline(request: Request) -> VideoPipeline:
    return request.app.state.pipeline
