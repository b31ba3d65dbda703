"""
Scheduler Test Fixtures.

Base fixtures:
  - Empty database (from tests/conftest.py)
  - Manual clock and manual thread spawner for deterministic ticks
  - Fake container runtime and runner

Execution is never threaded in these tests: ManualSpawner collects the
worker bodies and the test decides when each job "finishes".
"""

from typing import Callable, Optional

import pytest

from src.infra.docker_client import ContainerRun
from src.scheduler.dispatcher import Scheduler
from src.scheduler.entities import AutoTestResult, FailureKind, Job, JobState
from src.scheduler.persistence import PersistenceAdapter
from src.scheduler.recorder import ResultRecorder


class MockClock:
    """
    Monotonic clock stand-in.

    Starts at zero and advances only when explicitly ticked.
    """

    def __init__(self, start: float = 0.0):
        self._current = start

    def __call__(self) -> float:
        return self._current

    def tick(self, seconds: float = 1.0) -> None:
        """Advance time by specified seconds."""
        self._current += seconds


class ManualSpawner:
    """Collects job bodies instead of starting threads."""

    def __init__(self):
        self.pending: list[tuple[str, Callable[[], None]]] = []

    def __call__(self, target: Callable[[], None], name: str) -> None:
        self.pending.append((name, target))

    def run_next(self) -> None:
        _, target = self.pending.pop(0)
        target()

    def run_all(self) -> None:
        while self.pending:
            self.run_next()


class FakeRunner:
    """
    Runner whose outcome per job is scripted.

    By default every job SUCCEEDS with the report from report_for().
    """

    def __init__(self, report: Optional[dict] = None):
        self.report = report or {"scoreTest": 80, "scoreOverall": 80, "custom": {}}
        self.outcomes: dict[str, tuple[JobState, Optional[FailureKind]]] = {}
        self.jobs_run: list[Job] = []

    def fail_repo(self, repo_id: str, state: JobState, failure: Optional[FailureKind] = None):
        self.outcomes[repo_id] = (state, failure)

    def run(self, job: Job) -> AutoTestResult:
        self.jobs_run.append(job)
        state, failure = self.outcomes.get(job.target.repo_id, (JobState.SUCCEEDED, None))
        report = self.report if state in (JobState.SUCCEEDED, JobState.FAILED) else None
        return AutoTestResult.create(job, state, report=report, failure=failure, exit_code=0)


class FakeProbe:
    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.pings = 0

    def ping(self) -> bool:
        self.pings += 1
        return self.healthy


class FakeContainerClient:
    """In-memory ContainerClient recording calls."""

    def __init__(self, run: Optional[ContainerRun] = None, error: Optional[Exception] = None):
        self.next_run = run
        self.error = error
        self.started: list[str] = []
        self.removed: list[str] = []
        self.output_lines: list[str] = []

    def ping(self) -> bool:
        return self.error is None

    def run_container(self, image, target, timeout_seconds, name, on_output=None) -> ContainerRun:
        self.started.append(name)
        if self.error is not None:
            raise self.error
        if on_output is not None:
            for line in self.output_lines:
                on_output(line)
        return self.next_run or ContainerRun(
            container_name=name,
            container_id="cid-1",
            exit_code=0,
            report={"scoreTest": 80, "scoreOverall": 80, "custom": {}},
            logs="ok\n",
        )

    def remove_container(self, name: str) -> None:
        self.removed.append(name)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock()


@pytest.fixture
def spawner() -> ManualSpawner:
    return ManualSpawner()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def recorder(store: PersistenceAdapter) -> ResultRecorder:
    return ResultRecorder(store)


@pytest.fixture
def make_scheduler(store, runner, recorder, portal, probe, spawner, mock_clock) -> Callable[..., Scheduler]:
    """Factory for schedulers wired to the fakes above."""

    def _create(max_concurrent_jobs: int = 2, lease_grace_seconds: float = 60) -> Scheduler:
        return Scheduler(
            store=store,
            runner=runner,
            recorder=recorder,
            portal=portal,
            probe=probe,
            max_concurrent_jobs=max_concurrent_jobs,
            lease_grace_seconds=lease_grace_seconds,
            spawn=spawner,
            clock=mock_clock,
        )

    return _create


@pytest.fixture
def scheduler(make_scheduler) -> Scheduler:
    return make_scheduler()
