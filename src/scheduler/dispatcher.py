"""
Scheduler for the AutoTest orchestrator.

Tick-driven promotion of queued commits to running container jobs:
1. Reap running jobs that already terminated or whose lease expired
2. Compute capacity = max_concurrent_jobs - running (0 while degraded)
3. Take queue entries by priority then FIFO, skipping busy repos
4. Create RUNNING jobs and hand each to the runner on its own thread

Guarantees:
- At most max_concurrent_jobs jobs run at once
- At most one job per repo runs at once
- Concurrent tick() calls collapse into one in-flight promotion pass
- A repo lock is held no longer than the job's timeout plus a grace lease

What Scheduler MUST NOT do:
- Enforce container timeouts (ContainerRunner's responsibility)
- Retry failed jobs
- Grade results (delegated to the completion callback)
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from src.grading.portal import ClassPortal
from src.infra import config

from .entities import (
    AutoTestResult,
    CommitTarget,
    EnqueueOutcome,
    FailureKind,
    Job,
    JobState,
    RunningInfo,
    now_iso,
)
from .errors import ConfigurationError
from .executor import container_name_for
from .persistence import DataStore
from .queue_manager import CommitQueue
from .recorder import ResultRecorder


logger = logging.getLogger(__name__)


class RunnerProtocol(Protocol):
    """Protocol for job runners."""

    def run(self, job: Job) -> AutoTestResult:
        """Run a job to a terminal result. Must not raise."""
        ...


class RuntimeProbe(Protocol):
    """Health check used to leave degraded mode."""

    def ping(self) -> bool: ...


def spawn_thread(target: Callable[[], None], name: str) -> None:
    """Run target on a daemon thread."""
    threading.Thread(target=target, name=name, daemon=True).start()


@dataclass
class _RunningJob:
    job: Job
    lease_expires_at: float


@dataclass
class SchedulerStatus:
    """Read-only snapshot for health/status reporting."""

    queued_count: int
    running_count: int
    capacity: int
    max_concurrent_jobs: int
    degraded: bool
    per_repo_running: list[RunningInfo] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "queued_count": self.queued_count,
            "running_count": self.running_count,
            "capacity": self.capacity,
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "degraded": self.degraded,
            "per_repo_running": [info.to_dict() for info in self.per_repo_running],
        }


class Scheduler:
    """
    Promotes queued commits to running jobs under a concurrency cap.

    Shared mutable state (queue, running jobs, repo locks) is guarded by
    _state_lock. _tick_lock serializes promotion passes.
    """

    def __init__(
        self,
        store: DataStore,
        runner: RunnerProtocol,
        recorder: ResultRecorder,
        portal: ClassPortal,
        probe: RuntimeProbe,
        max_concurrent_jobs: int = config.MAX_CONCURRENT_JOBS,
        lease_grace_seconds: float = config.LEASE_GRACE_SECONDS,
        spawn: Callable[[Callable[[], None], str], None] = spawn_thread,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize Scheduler.

        Args:
            store: DataStore for jobs and results
            runner: Runs one job to completion (called on a worker thread)
            recorder: Persists results and terminal job states
            portal: Supplies per-deliverable timeouts for leases
            probe: Runtime health check used while degraded
            max_concurrent_jobs: Global cap on running jobs (>= 1)
            lease_grace_seconds: Slack added to a job's timeout before its
                slot and repo lock are forcibly released
            spawn: Starts a job's execution; injectable for deterministic tests
            clock: Monotonic seconds, used for leases
        """
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")

        self.store = store
        self.runner = runner
        self.recorder = recorder
        self.portal = portal
        self.probe = probe
        self.max_concurrent_jobs = max_concurrent_jobs
        self.lease_grace_seconds = lease_grace_seconds
        self._spawn = spawn
        self._clock = clock

        self.queue = CommitQueue()
        self._running: dict[str, _RunningJob] = {}
        self._repo_locks: dict[str, str] = {}
        self._degraded = False

        self._state_lock = threading.RLock()
        self._tick_lock = threading.Lock()
        self._tick_pending = False
        self._idle = threading.Condition(self._state_lock)

        # Called after a result is recorded (grading + feedback)
        self._on_job_finished: Optional[Callable[[Job, AutoTestResult], None]] = None

    def set_on_job_finished(self, callback: Callable[[Job, AutoTestResult], None]) -> None:
        """Set callback invoked with each recorded result."""
        self._on_job_finished = callback

    @property
    def degraded(self) -> bool:
        return self._degraded

    # =========================================================================
    # Intake
    # =========================================================================

    def enqueue(self, target: CommitTarget) -> EnqueueOutcome:
        """
        Queue a commit for testing.

        Rejects (accepted=False) a target whose identity is already queued,
        running, or has a completed result. Repeated webhook deliveries are
        therefore harmless. A comment request for a commit already queued by
        a push raises that entry to the comment tier.
        """
        with self._state_lock:
            for running in self._running.values():
                if running.job.target.identity == target.identity:
                    return EnqueueOutcome(accepted=False, reason="already running")

            if self.store.has_completed_result(target):
                return EnqueueOutcome(accepted=False, reason="already completed")

            entry = self.queue.add(target)
            if entry is None:
                raised = self.queue.escalate(target)
                if raised is not None:
                    logger.info(
                        f"Raised queued {target.repo_id}@{target.commit_sha[:8]} to "
                        f"priority {raised.priority} for {target.requested_by}"
                    )
                    return EnqueueOutcome(
                        accepted=False, reason="already queued; priority raised", entry=raised
                    )
                return EnqueueOutcome(accepted=False, reason="already queued")

        logger.info(
            f"Queued {target.repo_id}@{target.commit_sha[:8]} for {target.deliverable_id} "
            f"(kind={target.delivery_kind.value}, priority={entry.priority})"
        )
        return EnqueueOutcome(accepted=True, entry=entry)

    # =========================================================================
    # Tick
    # =========================================================================

    def tick(self) -> None:
        """
        Run a promotion pass.

        Safe to call from any thread at any time. A call that finds a pass in
        flight marks a pending request and returns; the in-flight pass then
        runs once more before giving up the lock.
        """
        with self._state_lock:
            self._tick_pending = True

        while True:
            if not self._tick_lock.acquire(blocking=False):
                return
            # Checking pending and releasing happen under one lock so a
            # request made in between is never lost
            with self._state_lock:
                if not self._tick_pending:
                    self._tick_lock.release()
                    return
                self._tick_pending = False
            try:
                self._promotion_pass()
            finally:
                self._tick_lock.release()

    def _promotion_pass(self) -> None:
        self._reap()

        if self._degraded:
            if not self.probe.ping():
                logger.debug("Container runtime still unavailable; capacity 0")
                return
            self._degraded = False
            logger.info("Container runtime reachable again; capacity restored")

        to_start: list[Job] = []
        with self._state_lock:
            available = self.max_concurrent_jobs - len(self._running)
            if available <= 0 or len(self.queue) == 0:
                return

            entries = self.queue.take(available, busy_repos=self._repo_locks.keys())
            for entry in entries:
                job = self._start_job(entry.target)
                if job is not None:
                    to_start.append(job)

        for job in to_start:
            self._spawn(lambda job=job: self._execute(job), f"autotest-job-{job.job_id[:8]}")

    def _start_job(self, target: CommitTarget) -> Optional[Job]:
        """Create a RUNNING job and take its slot and repo lock. Caller holds _state_lock."""
        job = Job.create(target)
        job.state = JobState.RUNNING
        job.started_at = now_iso()
        job.container_name = container_name_for(job)

        try:
            self.store.create_job(job)
        except Exception as e:
            logger.error(f"Could not persist job for {target.identity_key}: {e}")
            self.queue.add(target)
            return None

        self._running[job.job_id] = _RunningJob(
            job=job,
            lease_expires_at=self._clock() + self._lease_seconds(target),
        )
        self._repo_locks[target.repo_id] = job.job_id

        logger.info(
            f"Dispatched job {job.job_id} for {target.repo_id}@{target.commit_sha[:8]} "
            f"({len(self._running)}/{self.max_concurrent_jobs} running)"
        )
        return job

    def _lease_seconds(self, target: CommitTarget) -> float:
        try:
            timeout = self.portal.get_policy(target.deliverable_id).timeout_seconds
        except ConfigurationError:
            timeout = config.DEFAULT_TIMEOUT_SECONDS
        return timeout + self.lease_grace_seconds

    def _reap(self) -> None:
        """Release slots of jobs that already terminated or outlived their lease."""
        now = self._clock()
        expired: list[Job] = []

        with self._state_lock:
            for job_id, running in list(self._running.items()):
                stored = self.store.get_job(job_id)
                if stored is not None and stored.is_terminal():
                    self._release(job_id)
                elif now >= running.lease_expires_at:
                    expired.append(running.job)
                    self._release(job_id)

        for job in expired:
            logger.error(f"Job {job.job_id} exceeded its lease; marking ERRORED")
            self.recorder.record(
                job,
                AutoTestResult.create(
                    job,
                    JobState.ERRORED,
                    failure=FailureKind.LEASE_EXPIRED,
                    error="Job exceeded its lease without reporting an outcome",
                ),
            )

    def _release(self, job_id: str) -> None:
        """Free a job's slot and repo lock. Caller holds _state_lock."""
        running = self._running.pop(job_id, None)
        if running is None:
            return
        repo_id = running.job.target.repo_id
        if self._repo_locks.get(repo_id) == job_id:
            del self._repo_locks[repo_id]
        self._idle.notify_all()

    # =========================================================================
    # Execution
    # =========================================================================

    def _execute(self, job: Job) -> None:
        """Worker-thread body: run, record, release, notify, tick."""
        try:
            result = self.runner.run(job)
        except Exception as e:
            logger.exception(f"Runner raised for job {job.job_id}")
            result = AutoTestResult.create(
                job, JobState.ERRORED, failure=FailureKind.RUNNER_ERROR, error=str(e)
            )
        self._complete(job, result)

    def _complete(self, job: Job, result: AutoTestResult) -> None:
        recorded = self.recorder.record(job, result)

        with self._state_lock:
            self._release(job.job_id)
            if result.failure == FailureKind.RUNTIME_UNAVAILABLE:
                if not self._degraded:
                    logger.warning("Container runtime unavailable; scheduler degraded")
                self._degraded = True

        if recorded is not None and self._on_job_finished is not None:
            try:
                self._on_job_finished(job, recorded)
            except Exception as e:
                logger.error(f"Error in job completion callback: {e}", exc_info=True)

        self.tick()

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> SchedulerStatus:
        with self._state_lock:
            per_repo = [
                RunningInfo(
                    repo_id=r.job.target.repo_id,
                    job_id=r.job.job_id,
                    commit_sha=r.job.target.commit_sha,
                    deliverable_id=r.job.target.deliverable_id,
                    started_at=r.job.started_at,
                )
                for r in self._running.values()
            ]
            return SchedulerStatus(
                queued_count=len(self.queue),
                running_count=len(self._running),
                capacity=0 if self._degraded else self.max_concurrent_jobs,
                max_concurrent_jobs=self.max_concurrent_jobs,
                degraded=self._degraded,
                per_repo_running=per_repo,
            )

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no job is running.

        Returns:
            True if idle, False if timeout reached
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout=timeout)
