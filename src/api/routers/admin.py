"""
Admin operations.

POST /admin/release/{deliverable_id} - recompute grades for a deliverable
GET  /admin/images                   - list harness images
POST /admin/images                   - build a harness image
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from src.grading.retro import RetroEntry
from src.scheduler.errors import (
    ConfigurationError,
    ImageBuildError,
    RuntimeUnavailableError,
)
from src.scheduler.service import AutoTestService

from ..dependencies.service import get_service
from ..schemas.autotest import (
    ImageBuildRequest,
    ImageBuildResponse,
    ImageListResponse,
    ReleaseRequest,
    ReleaseResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/release/{deliverable_id}", response_model=ReleaseResponse)
def release_deliverable(
    deliverable_id: str,
    request: ReleaseRequest = ReleaseRequest(),
    service: AutoTestService = Depends(get_service),
):
    """
    Recompute every current grade of a deliverable.

    Dry run by default; set commit=true to persist. Retro adjustments come
    from raw survey records, explicit per-person entries, or both.
    """
    retro_entries = None
    if request.retro is not None:
        retro_entries = {
            person.lower(): RetroEntry(
                score=entry.score,
                feedback=entry.feedback,
                missing_form=entry.missing_form,
            )
            for person, entry in request.retro.items()
        }

    try:
        summary = service.release_deliverable(
            deliverable_id,
            retro_entries=retro_entries,
            commit=request.commit,
            test_user=request.test_user,
            survey=request.survey,
            contributors=request.contributors,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ReleaseResponse(**summary.to_dict())


@router.get("/images", response_model=ImageListResponse)
def list_images(service: AutoTestService = Depends(get_service)):
    """List harness images known to the container runtime."""
    try:
        return ImageListResponse(images=service.list_images())
    except (RuntimeUnavailableError, ConfigurationError) as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/images", response_model=ImageBuildResponse)
def build_image(request: ImageBuildRequest, service: AutoTestService = Depends(get_service)):
    """Build a harness image from a path or git remote."""
    output: list[str] = []
    try:
        tag = service.build_image(
            request.remote, request.tag, dockerfile=request.file, on_output=output.append
        )
    except ImageBuildError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (RuntimeUnavailableError, ConfigurationError) as e:
        raise HTTPException(status_code=503, detail=str(e))

    return ImageBuildResponse(tag=tag, output=output)
