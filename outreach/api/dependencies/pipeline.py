"""
Request access to the pipeline built at startup.
"""
from fastapi import Request

from outreach.runtime import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline
