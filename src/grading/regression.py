"""
Regression penalty across a student's submission history.

A regression is a drop in acceptance-suite score between two consecutive
valid submissions. The single worst regression is forgiven; the rest are
summed and scaled into a percentage-point penalty:

    penalty = round(100 * sum(remaining) * (acceptance / public) / 2, 2)

Valid submissions: SUCCEEDED, on the primary branch, scoreOverall > 0,
received no later than the deliverable's close time.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence

from src.scheduler.entities import AutoTestResult, JobState
from src.scheduler.errors import ConfigurationError

from .policy import DeliverableGradingPolicy
from .scoring import acceptance_score

logger = logging.getLogger(__name__)


class RegressionStatus(str, Enum):
    """Why a penalty is (or is not) applied."""

    NONE = "none"
    FORGIVEN = "forgiven"
    APPLIED = "applied"


@dataclass(frozen=True)
class RegressionOutcome:
    penalty: float
    status: RegressionStatus
    deltas: tuple[float, ...]
    forgiven_delta: Optional[float]
    history: tuple[AutoTestResult, ...]


def is_valid_for_regression(
    result: AutoTestResult, policy: DeliverableGradingPolicy
) -> bool:
    if result.state != JobState.SUCCEEDED or not result.report:
        return False
    if result.target.deliverable_id != policy.deliverable_id:
        return False
    if result.target.ref != policy.primary_ref:
        return False
    try:
        overall = float(result.report.get("scoreOverall") or 0)
    except (TypeError, ValueError):
        return False
    return overall > 0 and result.target.timestamp <= policy.close_timestamp


def regression_history(
    result: AutoTestResult,
    prior_results: Iterable[AutoTestResult],
    policy: DeliverableGradingPolicy,
) -> list[AutoTestResult]:
    """
    Valid results up to and including the graded one, oldest first.

    De-duplicated by result_id, so a result that also appears among its own
    priors is counted once.
    """
    seen: set[str] = set()
    history = []
    for candidate in [*prior_results, result]:
        if candidate.result_id in seen:
            continue
        seen.add(candidate.result_id)
        if candidate.target.timestamp > result.target.timestamp:
            continue
        if is_valid_for_regression(candidate, policy):
            history.append(candidate)

    # sort is stable: equal timestamps keep arrival order
    history.sort(key=lambda r: r.target.timestamp)
    return history


def regression_deltas(
    history: Sequence[AutoTestResult], acceptance_test_count: int
) -> list[float]:
    """Acceptance drop for each result vs. its predecessor (positive = worse)."""
    deltas = []
    previous: Optional[AutoTestResult] = None
    for current in history:
        deltas.append(
            acceptance_score(previous, acceptance_test_count)
            - acceptance_score(current, acceptance_test_count)
        )
        previous = current
    return deltas


def penalty_from_deltas(
    deltas: Iterable[float],
    acceptance_test_count: int,
    public_test_count: int,
) -> tuple[float, Optional[float]]:
    """
    Penalty after forgiving the single largest regression.

    Returns:
        (penalty, forgiven_delta); forgiven_delta is None without regressions

    Raises:
        ConfigurationError: If a penalty must be scaled by a zero public count
    """
    positive = sorted(d for d in deltas if d > 0)
    if not positive:
        return 0.0, None

    # Ties: any one maximal delta is dropped
    forgiven = positive.pop()
    if not positive:
        return 0.0, forgiven

    if public_test_count <= 0:
        raise ConfigurationError("public_test_count must be positive to scale a regression penalty")

    total = sum(positive)
    penalty = round(100 * total * (acceptance_test_count / public_test_count) / 2, 2)
    return penalty, forgiven


def compute_regression(
    result: AutoTestResult,
    prior_results: Iterable[AutoTestResult],
    policy: DeliverableGradingPolicy,
) -> RegressionOutcome:
    history = regression_history(result, prior_results, policy)
    if len(history) <= 1:
        return RegressionOutcome(
            penalty=0.0,
            status=RegressionStatus.NONE,
            deltas=(),
            forgiven_delta=None,
            history=tuple(history),
        )

    deltas = regression_deltas(history, policy.acceptance_test_count)
    penalty, forgiven = penalty_from_deltas(
        deltas, policy.acceptance_test_count, policy.public_test_count
    )
    person = result.target.requested_by
    drops = sum(1 for d in deltas if d > 0)

    if drops == 0:
        status = RegressionStatus.NONE
    elif drops == 1:
        status = RegressionStatus.FORGIVEN
        logger.info(
            f"Regression for {person} on {policy.deliverable_id} forgiven "
            f"(single drop of {forgiven:.4f})"
        )
    else:
        status = RegressionStatus.APPLIED
        logger.info(
            f"Regression penalty {penalty} for {person} on {policy.deliverable_id} "
            f"({drops} drops, largest forgiven)"
        )

    return RegressionOutcome(
        penalty=penalty,
        status=status,
        deltas=tuple(deltas),
        forgiven_delta=forgiven,
        history=tuple(history),
    )
