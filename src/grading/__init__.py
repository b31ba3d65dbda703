"""
Grading: deliverable policies, scoring, regression penalty and grade records.
"""

from .policy import (
    ColumnEquals,
    DeliverableGradingPolicy,
    RetroColumns,
    ScoringStrategy,
    load_policies,
)
from .portal import ClassPortal, StaticClassPortal
from .regression import RegressionOutcome, RegressionStatus, compute_regression, penalty_from_deltas
from .retro import RetroEntry, entries_from_record, entries_from_survey
from .computer import GradeComputer, ReleaseSummary

__all__ = [
    "ColumnEquals",
    "DeliverableGradingPolicy",
    "RetroColumns",
    "ScoringStrategy",
    "load_policies",
    "ClassPortal",
    "StaticClassPortal",
    "RegressionOutcome",
    "RegressionStatus",
    "compute_regression",
    "penalty_from_deltas",
    "RetroEntry",
    "entries_from_record",
    "entries_from_survey",
    "GradeComputer",
    "ReleaseSummary",
]
