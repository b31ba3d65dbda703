"""
FastAPI application entry point.

HTTP front door for the AutoTest orchestrator: GitHub webhook intake,
scheduler status, and admin operations.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from src import __version__
from src.scheduler.service import AutoTestService
from .routers import webhooks, status, admin
from .dependencies.auth import verify_api_key, API_AUTH_ENABLED

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the AutoTestService (unless one was attached beforehand, as tests
    do), runs crash recovery and starts the periodic tick thread.
    """
    service = getattr(app.state, "autotest", None)
    owned = service is None
    if owned:
        service = AutoTestService.create()
        app.state.autotest = service
        recovery_stats = service.start(run_recovery=True)
        logger.info(f"Recovery: {recovery_stats}")

    yield

    if owned:
        service.stop()
        app.state.autotest = None

# Tag metadata for Swagger UI
tags_metadata = [
    {
        "name": "webhooks",
        "description": "GitHub webhook intake - push and commit_comment deliveries",
    },
    {
        "name": "status",
        "description": "Scheduler snapshot and job inspection",
    },
    {
        "name": "admin",
        "description": "Grade release and harness image management",
    },
]

app = FastAPI(
    title="AutoTest API",
    lifespan=lifespan,
    description="""
## AutoTest API

Continuous testing for student repositories. Pushes and bot mentions in
commit comments queue a containerized test run; results are graded and
posted back to the commit.

### Authentication
Webhook deliveries are verified with `X-Hub-Signature` when `WEBHOOK_SECRET`
is set. When `API_AUTH_ENABLED=true`, `/admin` endpoints require an
`X-API-Key` header matching the `API_KEY` environment variable.

### Usage
```bash
# Start server
python main.py --host 0.0.0.0 --port 8000

# Check scheduler
curl http://localhost:8000/status
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)

# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


auth_dependency = [Depends(verify_api_key)] if API_AUTH_ENABLED else []

app.include_router(webhooks.router, tags=["webhooks"])
app.include_router(status.router, tags=["status"])
app.include_router(
    admin.router, prefix="/admin", tags=["admin"], dependencies=auth_dependency
)
