"""
Scheduler status and job inspection.

GET /status           - tick, then return the scheduler snapshot
GET /jobs/{job_id}    - job record, result and live log tail
"""

from fastapi import APIRouter, Depends, HTTPException

from src.scheduler.service import AutoTestService

from ..dependencies.service import get_service
from ..schemas.autotest import (
    CommitTargetResponse,
    JobDetailResponse,
    ResultResponse,
    StatusResponse,
)

router = APIRouter()


def _target_to_response(target) -> CommitTargetResponse:
    return CommitTargetResponse(
        repo_id=target.repo_id,
        deliverable_id=target.deliverable_id,
        commit_sha=target.commit_sha,
        ref=target.ref,
        requested_by=target.requested_by,
        delivery_kind=target.delivery_kind.value,
        timestamp=target.timestamp,
        commit_url=target.commit_url,
    )


def _result_to_response(result) -> ResultResponse:
    return ResultResponse(
        result_id=result.result_id,
        state=result.state.value,
        failure=result.failure.value if result.failure else None,
        exit_code=result.exit_code,
        error=result.error,
        report=result.report,
        log_excerpt=result.log_excerpt,
        finished_at=result.finished_at,
    )


@router.get("/status", response_model=StatusResponse)
def get_status(service: AutoTestService = Depends(get_service)):
    """
    Trigger a scheduling pass and return the current snapshot.

    Ticking here is harmless: concurrent passes collapse into one.
    """
    service.tick()
    return StatusResponse(**service.get_status().to_dict())


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
def get_job(job_id: str, service: AutoTestService = Depends(get_service)):
    """Get a job with its recorded result or live output."""
    detail = service.get_job_detail(job_id)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    job = detail["job"]
    result = detail["result"]
    return JobDetailResponse(
        job_id=job.job_id,
        state=job.state.value,
        target=_target_to_response(job.target),
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        container_name=job.container_name,
        error=job.error,
        result=_result_to_response(result) if result else None,
        live_log=detail["live_log"],
    )
