"""
AutoTest API schemas.

Request/response models for webhook intake, status, job inspection and
admin operations.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Webhook
# =============================================================================


class CommitTargetResponse(BaseModel):
    """A commit accepted for testing."""

    repo_id: str = Field(..., description="Repository name")
    deliverable_id: str = Field(..., description="Deliverable the commit is tested against")
    commit_sha: str = Field(..., description="Commit SHA")
    ref: str = Field(..., description="Pushed ref; empty for comment requests")
    requested_by: str = Field(..., description="Pusher or commenter")
    delivery_kind: str = Field(..., description="push or comment")
    timestamp: int = Field(..., description="Receive time (epoch ms)")
    commit_url: Optional[str] = Field(default=None, description="Web URL of the commit")


# =============================================================================
# Status
# =============================================================================


class RunningJobInfo(BaseModel):
    repo_id: str
    job_id: str
    commit_sha: str
    deliverable_id: str
    started_at: Optional[str] = None


class StatusResponse(BaseModel):
    """Scheduler snapshot."""

    queued_count: int = Field(..., description="Commits waiting for a slot")
    running_count: int = Field(..., description="Containers currently running")
    capacity: int = Field(..., description="Effective concurrency cap (0 while degraded)")
    max_concurrent_jobs: int = Field(..., description="Configured concurrency cap")
    degraded: bool = Field(..., description="True while the container runtime is unavailable")
    per_repo_running: List[RunningJobInfo] = Field(default_factory=list)


class ResultResponse(BaseModel):
    result_id: str
    state: str
    failure: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    report: Optional[dict] = None
    log_excerpt: str = ""
    finished_at: str


class JobDetailResponse(BaseModel):
    """A job with its result (once recorded) and live output (while running)."""

    job_id: str = Field(..., description="Unique job identifier")
    state: str = Field(..., description="QUEUED/RUNNING/SUCCEEDED/FAILED/TIMED_OUT/ERRORED")
    target: CommitTargetResponse
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    container_name: Optional[str] = None
    error: Optional[str] = None
    result: Optional[ResultResponse] = None
    live_log: List[str] = Field(default_factory=list, description="Tail of container output")


# =============================================================================
# Admin
# =============================================================================


class RetroEntryRequest(BaseModel):
    score: float = Field(..., description="Retrospective score")
    feedback: str = Field(default="", description="TA feedback")
    missing_form: bool = Field(default=False, description="Contribution form not submitted")


class ReleaseRequest(BaseModel):
    """Recompute every grade of a deliverable."""

    commit: bool = Field(default=False, description="Persist grades; false is a dry run")
    test_user: Optional[str] = Field(default=None, description="Always persisted, even in a dry run")
    retro: Optional[Dict[str, RetroEntryRequest]] = Field(
        default=None,
        description="Retro adjustments keyed by person id",
    )
    survey: Optional[List[Dict[str, str]]] = Field(
        default=None,
        description="Team survey records, mapped through the deliverable's retro columns",
    )
    contributors: List[str] = Field(
        default_factory=list,
        description="Person ids with a contribution form on file",
    )


class ReleaseResponse(BaseModel):
    deliverable_id: str
    dry_run: bool
    increased: int
    decreased: int
    unchanged: int
    average_change: float
    committed: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)


class ImageBuildRequest(BaseModel):
    """Build a harness image."""

    remote: str = Field(..., description="Build context: path or git URL")
    tag: str = Field(..., description="Image tag")
    file: Optional[str] = Field(default=None, description="Dockerfile path within the context")


class ImageBuildResponse(BaseModel):
    tag: str
    output: List[str] = Field(default_factory=list, description="Build output lines")


class ImageListResponse(BaseModel):
    images: List[dict] = Field(default_factory=list)
