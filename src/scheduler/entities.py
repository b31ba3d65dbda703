"""
AutoTest Domain Entities.

- CommitTarget: Canonical, immutable description of one commit to test
- QueueEntry: A CommitTarget waiting for a container slot
- Job: One in-flight container execution bound to a single commit
- AutoTestResult: Durable, write-once record of a completed run
- Grade: Student-facing outcome derived from one result (append-only)

Job state machine:
    QUEUED -> RUNNING -> {SUCCEEDED, FAILED, TIMED_OUT, ERRORED}

Terminal states are write-once; a Job never leaves a terminal state.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class DeliveryKind(str, Enum):
    """How a commit reached the orchestrator."""

    PUSH = "push"
    COMMENT = "comment"


class JobState(str, Enum):
    """
    Job lifecycle states.

    - QUEUED: Waiting for a slot
    - RUNNING: Container started
    - SUCCEEDED: Container exited 0 with a well-formed report
    - FAILED: Harness reported failure (non-zero exit, well-formed report)
    - TIMED_OUT: Wall-clock timeout hit; partial report may exist
    - ERRORED: Runtime unreachable, malformed report, or runner fault
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ERRORED = "ERRORED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT, JobState.ERRORED}
)

# Results in these states block re-enqueue of the same commit identity.
COMPLETED_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED})


class FailureKind(str, Enum):
    """Machine-readable cause attached to non-successful results."""

    RUNTIME_UNAVAILABLE = "runtime_unavailable"
    MALFORMED_REPORT = "malformed_report"
    TIMEOUT = "timeout"
    RUNNER_ERROR = "runner_error"
    CONFIG_ERROR = "config_error"
    LEASE_EXPIRED = "lease_expired"
    RECOVERED = "recovered"


# Priority tiers (higher = dispatched sooner)
PRIORITY_COMMENT = 1
PRIORITY_PUSH = 0


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CommitTarget:
    """
    A commit that should be tested for one deliverable.

    Immutable once created. Identity is (repo_id, commit_sha, deliverable_id);
    two targets with the same identity describe the same test run.

    timestamp is the epoch-millisecond time the triggering event was received.
    """

    repo_id: str
    deliverable_id: str
    commit_sha: str
    ref: str
    requested_by: str
    delivery_kind: DeliveryKind
    timestamp: int
    commit_url: Optional[str] = None
    clone_url: Optional[str] = None
    repo_full_name: Optional[str] = None

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.repo_id, self.commit_sha, self.deliverable_id)

    @property
    def identity_key(self) -> str:
        """Identity flattened into a single string (used as a storage key)."""
        return f"{self.repo_id}:{self.commit_sha}:{self.deliverable_id}"

    @property
    def priority(self) -> int:
        if self.delivery_kind == DeliveryKind.COMMENT:
            return PRIORITY_COMMENT
        return PRIORITY_PUSH

    def to_dict(self) -> dict:
        return {
            "repo_id": self.repo_id,
            "deliverable_id": self.deliverable_id,
            "commit_sha": self.commit_sha,
            "ref": self.ref,
            "requested_by": self.requested_by,
            "delivery_kind": self.delivery_kind.value,
            "timestamp": self.timestamp,
            "commit_url": self.commit_url,
            "clone_url": self.clone_url,
            "repo_full_name": self.repo_full_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommitTarget":
        return cls(
            repo_id=data["repo_id"],
            deliverable_id=data["deliverable_id"],
            commit_sha=data["commit_sha"],
            ref=data.get("ref", ""),
            requested_by=data["requested_by"],
            delivery_kind=DeliveryKind(data["delivery_kind"]),
            timestamp=int(data["timestamp"]),
            commit_url=data.get("commit_url"),
            clone_url=data.get("clone_url"),
            repo_full_name=data.get("repo_full_name"),
        )


@dataclass
class QueueEntry:
    """
    A CommitTarget waiting for a container slot.

    Lives from enqueue until promotion to a RUNNING Job; it is removed from
    the queue at promotion time, not at completion.
    """

    target: CommitTarget
    priority: int
    sequence: int
    enqueued_at: str = field(default_factory=now_iso)
    attempts: int = 0


@dataclass
class Job:
    """
    One in-flight container execution bound to a single commit.

    Mutability rules:
    - job_id, target, created_at: Immutable
    - state: Forward-only; terminal states are write-once
    - started_at, finished_at, container_name: Write-once
    """

    job_id: str
    target: CommitTarget
    state: JobState
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    container_name: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def create(cls, target: CommitTarget) -> "Job":
        """Create a new Job in QUEUED state."""
        return cls(
            job_id=generate_uuid(),
            target=target,
            state=JobState.QUEUED,
        )

    def is_terminal(self) -> bool:
        return self.state.is_terminal


@dataclass(frozen=True)
class AutoTestResult:
    """
    Durable record of one completed run. Write-once.

    report carries the harness output: scoreTest, scoreCover, scoreOverall
    and a custom dict (cluster breakdowns such as the "Acceptance" suite and
    an optional "private" section).
    """

    result_id: str
    job_id: str
    target: CommitTarget
    state: JobState
    started_at: str
    finished_at: str
    container_id: Optional[str] = None
    report: Optional[dict] = None
    exit_code: Optional[int] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    log_excerpt: str = ""

    @classmethod
    def create(
        cls,
        job: Job,
        state: JobState,
        report: Optional[dict] = None,
        container_id: Optional[str] = None,
        exit_code: Optional[int] = None,
        failure: Optional[FailureKind] = None,
        error: Optional[str] = None,
        log_excerpt: str = "",
    ) -> "AutoTestResult":
        """Create a terminal result for a job."""
        if not state.is_terminal:
            raise ValueError(f"Result state must be terminal, got {state.value}")
        return cls(
            result_id=generate_uuid(),
            job_id=job.job_id,
            target=job.target,
            state=state,
            started_at=job.started_at or now_iso(),
            finished_at=now_iso(),
            container_id=container_id,
            report=report,
            exit_code=exit_code,
            failure=failure,
            error=error,
            log_excerpt=log_excerpt,
        )

    @property
    def is_gradable(self) -> bool:
        """Only successful runs with a report ever reach the Grade Computer."""
        return self.state == JobState.SUCCEEDED and self.report is not None


@dataclass(frozen=True)
class Grade:
    """
    Student-facing outcome for one deliverable.

    Never mutated in place: every recomputation appends a new Grade and the
    previous one is retained for audit.
    """

    person_id: str
    deliverable_id: str
    score: float
    comment: str
    timestamp: int
    custom: dict = field(default_factory=dict)
    repo_id: Optional[str] = None
    result_id: Optional[str] = None
    url_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "person_id": self.person_id,
            "deliverable_id": self.deliverable_id,
            "score": self.score,
            "comment": self.comment,
            "timestamp": self.timestamp,
            "custom": self.custom,
            "repo_id": self.repo_id,
            "result_id": self.result_id,
            "url_name": self.url_name,
        }


@dataclass(frozen=True)
class NoOp:
    """Event that requires no work (branch deletion, ping, bot not mentioned)."""

    reason: str


@dataclass(frozen=True)
class EnqueueOutcome:
    """Result of Scheduler.enqueue. A rejected duplicate is a normal outcome."""

    accepted: bool
    reason: Optional[str] = None
    entry: Optional[QueueEntry] = None


@dataclass
class RunningInfo:
    """Per-repo view of a running job for status reporting."""

    repo_id: str
    job_id: str
    commit_sha: str
    deliverable_id: str
    started_at: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_id": self.repo_id,
            "job_id": self.job_id,
            "commit_sha": self.commit_sha,
            "deliverable_id": self.deliverable_id,
            "started_at": self.started_at,
        }
