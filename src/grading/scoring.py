"""
Score extraction from harness reports.

Report shape (the fields the grade computer relies on):

    {
      "scoreTest": 80.0,        # public suite, percent
      "scoreCover": 71.3,
      "scoreOverall": 77.5,
      "custom": {
        "private": {"scoreTest": 60.0},
        "cluster": {"Acceptance": {"passNames": [...], "failNames": [...]}}
      }
    }
"""

import logging
from typing import Optional

from src.scheduler.entities import AutoTestResult
from src.scheduler.errors import ConfigurationError, MalformedReportError

from .policy import DeliverableGradingPolicy

logger = logging.getLogger(__name__)

# Public minus private above this many points gets flagged in the comment
DIVERGENCE_THRESHOLD = 20.0

REQUIRED_REPORT_FIELDS = ("scoreTest", "scoreOverall")


def validate_report(report: Optional[dict]) -> dict:
    """
    Check that a report is well-formed.

    Raises:
        MalformedReportError: If scoreTest, scoreOverall or custom is missing
    """
    if not isinstance(report, dict):
        raise MalformedReportError("report is missing or not an object")
    missing = [name for name in REQUIRED_REPORT_FIELDS if report.get(name) is None]
    if missing:
        raise MalformedReportError(f"report missing {', '.join(missing)}")
    if not isinstance(report.get("custom"), dict):
        raise MalformedReportError("report missing custom object")
    for name in REQUIRED_REPORT_FIELDS:
        try:
            float(report[name])
        except (TypeError, ValueError) as e:
            raise MalformedReportError(f"report field {name} is not numeric") from e
    return report


def extract_private_score(report: dict) -> tuple[float, Optional[str]]:
    """
    Private suite score, defaulting to 0.

    Returns:
        (score, warning) where warning is set when the section is absent
    """
    private = report.get("custom", {}).get("private")
    if private is None:
        logger.warning("Report has no private section; using 0")
        return 0.0, "No private test results were found; private score set to 0"
    if private.get("scoreTest") is None:
        logger.warning("Report private section incomplete; using 0")
        return 0.0, "Private test results were incomplete; private score set to 0"
    return float(private["scoreTest"]), None


def weighted_score(
    score_public: float,
    score_private: float,
    policy: DeliverableGradingPolicy,
) -> float:
    """Linear interpolation of public and private scores, rounded to 2 places."""
    public_weight, private_weight = policy.weights()
    return round(score_public * public_weight + score_private * private_weight, 2)


def divergence_warning(score_public: float, score_private: float) -> Optional[str]:
    if score_public - score_private > DIVERGENCE_THRESHOLD:
        return (
            f"Public and private scores diverge "
            f"(public {score_public:g}, private {score_private:g})"
        )
    return None


def acceptance_score(
    result: Optional[AutoTestResult], acceptance_test_count: int
) -> float:
    """
    Fraction of the acceptance suite passed by a result.

    A missing result (the predecessor of the first submission) scores 0.
    """
    if result is None or not result.report:
        return 0.0
    if acceptance_test_count <= 0:
        raise ConfigurationError("acceptance_test_count must be positive")
    cluster = result.report.get("custom", {}).get("cluster") or {}
    pass_names = (cluster.get("Acceptance") or {}).get("passNames") or []
    return len(pass_names) / acceptance_test_count
