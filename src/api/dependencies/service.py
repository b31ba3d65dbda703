"""
Access to the AutoTestService built in the application lifespan.
"""

from fastapi import HTTPException, Request

from src.scheduler.service import AutoTestService


def get_service(request: Request) -> AutoTestService:
    service = getattr(request.app.state, "autotest", None)
    if service is None:
        raise HTTPException(status_code=503, detail="AutoTest service not initialized")
    return service
