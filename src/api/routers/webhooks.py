"""
GitHub webhook intake.

POST /githubWebhook - push and commit_comment deliveries
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from src.scheduler.entities import NoOp
from src.scheduler.errors import ConfigurationError, MalformedEventError
from src.scheduler.service import AutoTestService

from ..dependencies.service import get_service
from ..dependencies.signature import verify_github_signature
from ..schemas.autotest import CommitTargetResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/githubWebhook",
    response_model=Optional[CommitTargetResponse],
    dependencies=[Depends(verify_github_signature)],
    responses={204: {"description": "Event requires no work"}},
)
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(default=None),
    service: AutoTestService = Depends(get_service),
):
    """
    Receive a GitHub webhook delivery.

    - ping: 200 "pong"
    - push / commit_comment producing a commit to test: 200 with the target
    - nothing to do (branch deletion, bot not mentioned): 204
    - malformed or unhandled: 400
    """
    if not x_github_event:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

    if x_github_event == "ping":
        return JSONResponse(content="pong")

    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON")

    loop = asyncio.get_running_loop()
    try:
        event = await loop.run_in_executor(None, service.handle_event, x_github_event, payload)
    except (MalformedEventError, ConfigurationError) as e:
        logger.warning(f"Failed to process {x_github_event} delivery: {e}")
        raise HTTPException(status_code=400, detail=f"Failed to process commit: {e}")

    if isinstance(event, NoOp):
        return Response(status_code=204)

    return CommitTargetResponse(
        repo_id=event.repo_id,
        deliverable_id=event.deliverable_id,
        commit_sha=event.commit_sha,
        ref=event.ref,
        requested_by=event.requested_by,
        delivery_kind=event.delivery_kind.value,
        timestamp=event.timestamp,
        commit_url=event.commit_url,
    )
