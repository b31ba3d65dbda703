"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .autotest import (
    CommitTargetResponse,
    RunningJobInfo,
    StatusResponse,
    ResultResponse,
    JobDetailResponse,
    RetroEntryRequest,
    ReleaseRequest,
    ReleaseResponse,
    ImageBuildRequest,
    ImageBuildResponse,
    ImageListResponse,
)

__all__ = [
    "CommitTargetResponse",
    "RunningJobInfo",
    "StatusResponse",
    "ResultResponse",
    "JobDetailResponse",
    "RetroEntryRequest",
    "ReleaseRequest",
    "ReleaseResponse",
    "ImageBuildRequest",
    "ImageBuildResponse",
    "ImageListResponse",
]
