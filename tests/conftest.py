"""
Pytest configuration and shared fixtures.
"""

import importlib
import os
import tempfile
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from src.grading.policy import DeliverableGradingPolicy, ScoringStrategy
from src.grading.portal import StaticClassPortal
from src.scheduler.entities import (
    AutoTestResult,
    CommitTarget,
    DeliveryKind,
    Job,
    JobState,
)
from src.scheduler.persistence import PersistenceAdapter


# Fixed epoch-ms timestamps for deterministic tests
T0 = 1_700_000_000_000
CLOSE_TIMESTAMP = T0 + 10 * 24 * 60 * 60 * 1000


@pytest.fixture(autouse=True, scope="function")
def reset_auth_module():
    """
    Reset auth module state before each test.

    This ensures tests run with API_AUTH_ENABLED=false by default,
    unless the test explicitly sets it otherwise.
    """
    original_auth_enabled = os.environ.get("API_AUTH_ENABLED")
    original_api_key = os.environ.get("API_KEY")

    os.environ["API_AUTH_ENABLED"] = "false"

    yield

    if original_auth_enabled is not None:
        os.environ["API_AUTH_ENABLED"] = original_auth_enabled
    elif "API_AUTH_ENABLED" in os.environ:
        del os.environ["API_AUTH_ENABLED"]

    if original_api_key is not None:
        os.environ["API_KEY"] = original_api_key
    elif "API_KEY" in os.environ:
        del os.environ["API_KEY"]

    import src.api.dependencies.auth as auth_module
    importlib.reload(auth_module)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def store(temp_db_path: str) -> PersistenceAdapter:
    """Create a fresh PersistenceAdapter with empty database."""
    return PersistenceAdapter(temp_db_path)


# =============================================================================
# Domain Factories
# =============================================================================


@pytest.fixture
def make_policy() -> Callable[..., DeliverableGradingPolicy]:
    """Factory for grading policies (d1: 26 acceptance / 42 public / 20 private)."""

    def _create(**overrides) -> DeliverableGradingPolicy:
        values = dict(
            deliverable_id="d1",
            close_timestamp=CLOSE_TIMESTAMP,
            acceptance_test_count=26,
            public_test_count=42,
            private_test_count=20,
            strategy=ScoringStrategy.PUBLIC_PRIVATE,
            image="autotest/d1:latest",
            timeout_seconds=600,
        )
        values.update(overrides)
        return DeliverableGradingPolicy(**values)

    return _create


@pytest.fixture
def policy(make_policy) -> DeliverableGradingPolicy:
    return make_policy()


@pytest.fixture
def portal(policy) -> StaticClassPortal:
    return StaticClassPortal([policy], default_deliverable="d1")


@pytest.fixture
def make_target() -> Callable[..., CommitTarget]:
    """Factory for commit targets; every call gets a fresh SHA unless one is given."""
    counter = {"n": 0}

    def _create(**overrides) -> CommitTarget:
        counter["n"] += 1
        values = dict(
            repo_id="team_01",
            deliverable_id="d1",
            commit_sha=f"{counter['n']:040x}",
            ref="refs/heads/master",
            requested_by="alice",
            delivery_kind=DeliveryKind.PUSH,
            timestamp=T0 + counter["n"] * 1000,
            commit_url=None,
            clone_url="https://github.com/org/team_01.git",
            repo_full_name="org/team_01",
        )
        values.update(overrides)
        return CommitTarget(**values)

    return _create


@pytest.fixture
def make_report() -> Callable[..., dict]:
    """Factory for harness reports."""

    def _create(
        public: float = 80.0,
        private: Optional[float] = 60.0,
        overall: Optional[float] = None,
        acceptance_passed: int = 0,
        cover: float = 70.0,
    ) -> dict:
        custom: dict = {
            "cluster": {
                "Acceptance": {
                    "passNames": [f"acc_{i}" for i in range(acceptance_passed)],
                    "failNames": [],
                }
            }
        }
        if private is not None:
            custom["private"] = {"scoreTest": private}
        return {
            "scoreTest": public,
            "scoreCover": cover,
            "scoreOverall": public if overall is None else overall,
            "custom": custom,
        }

    return _create


@pytest.fixture
def make_result(make_target, make_report) -> Callable[..., AutoTestResult]:
    """Factory for terminal results; defaults to a SUCCEEDED run with a report."""

    def _create(
        target: Optional[CommitTarget] = None,
        state: JobState = JobState.SUCCEEDED,
        report: Optional[dict] = None,
        **target_overrides,
    ) -> AutoTestResult:
        target = target or make_target(**target_overrides)
        job = Job.create(target)
        job.state = JobState.RUNNING
        if report is None and state in (JobState.SUCCEEDED, JobState.FAILED):
            report = make_report()
        return AutoTestResult.create(job, state, report=report, exit_code=0)

    return _create
