"""
Deliverable grading policies.

One frozen DeliverableGradingPolicy per deliverable replaces per-checkpoint
subclasses: test counts, deadline, harness image, retro column mapping and
the retro bonus predicate are all plain configuration. The scoring rule is
picked by a ScoringStrategy tag.

Policies are loaded from a JSON file shaped like:

    {
      "deliverables": [
        {
          "deliverable_id": "c1",
          "close_timestamp": 1700000000000,
          "acceptance_test_count": 26,
          "public_test_count": 42,
          "private_test_count": 20,
          "strategy": "public_private",
          "image": "autotest/c1:latest",
          "timeout_seconds": 600,
          "retro_columns": [["Q1", "Q2", "Q3"]],
          "force_retro_bonus": {"column": "Q9", "value": "lonely child :("}
        }
      ]
    }
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from src.scheduler.errors import ConfigurationError

DEFAULT_PRIMARY_REF = "refs/heads/master"


class ScoringStrategy(str, Enum):
    """
    Named scoring rules.

    - PUBLIC_PRIVATE: weighted public/private score minus regression penalty
    - OVERALL: the harness's scoreOverall, unchanged (no regression analysis)
    """

    PUBLIC_PRIVATE = "public_private"
    OVERALL = "overall"


@dataclass(frozen=True)
class RetroColumns:
    """Survey columns holding one team member's id, retro score and TA feedback."""

    id_column: str
    score_column: str
    feedback_column: str


@dataclass(frozen=True)
class ColumnEquals:
    """Predicate over a survey record: record[column] == value."""

    column: str
    value: str

    def matches(self, record: dict) -> bool:
        return record.get(self.column) == self.value


@dataclass(frozen=True)
class DeliverableGradingPolicy:
    """Read-only grading configuration for one deliverable."""

    deliverable_id: str
    close_timestamp: int
    acceptance_test_count: int
    public_test_count: int
    private_test_count: int
    strategy: ScoringStrategy = ScoringStrategy.PUBLIC_PRIVATE
    primary_ref: str = DEFAULT_PRIMARY_REF
    image: str = ""
    timeout_seconds: int = 600
    retro_columns: tuple[RetroColumns, ...] = field(default_factory=tuple)
    force_retro_bonus: Optional[ColumnEquals] = None
    audit_id: str = "autotest"

    def weights(self) -> tuple[float, float]:
        """
        Public and private weights.

        Raises:
            ConfigurationError: If public + private test counts sum to zero
        """
        total = self.public_test_count + self.private_test_count
        if total <= 0:
            raise ConfigurationError(
                f"Deliverable {self.deliverable_id}: public + private test count is 0"
            )
        return self.public_test_count / total, self.private_test_count / total

    def validate(self) -> None:
        """Reject configurations that cannot produce a meaningful grade."""
        if self.strategy == ScoringStrategy.OVERALL:
            return
        self.weights()
        if self.private_test_count < 0:
            raise ConfigurationError(
                f"Deliverable {self.deliverable_id}: negative test count"
            )
        # Regression penalties divide by both counts.
        if self.acceptance_test_count <= 0:
            raise ConfigurationError(
                f"Deliverable {self.deliverable_id}: acceptance_test_count must be positive"
            )
        if self.public_test_count <= 0:
            raise ConfigurationError(
                f"Deliverable {self.deliverable_id}: public_test_count must be positive"
            )

    @classmethod
    def from_dict(cls, data: dict) -> "DeliverableGradingPolicy":
        try:
            retro_columns = tuple(
                RetroColumns(*columns) for columns in data.get("retro_columns", [])
            )
            bonus = data.get("force_retro_bonus")
            return cls(
                deliverable_id=data["deliverable_id"],
                close_timestamp=int(data["close_timestamp"]),
                acceptance_test_count=int(data.get("acceptance_test_count", 0)),
                public_test_count=int(data.get("public_test_count", 0)),
                private_test_count=int(data.get("private_test_count", 0)),
                strategy=ScoringStrategy(data.get("strategy", ScoringStrategy.PUBLIC_PRIVATE.value)),
                primary_ref=data.get("primary_ref", DEFAULT_PRIMARY_REF),
                image=data.get("image", ""),
                timeout_seconds=int(data.get("timeout_seconds", 600)),
                retro_columns=retro_columns,
                force_retro_bonus=ColumnEquals(bonus["column"], bonus["value"]) if bonus else None,
                audit_id=data.get("audit_id", "autotest"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid deliverable entry {data!r}: {e}") from e


def load_policies(path: str | Path) -> dict[str, DeliverableGradingPolicy]:
    """
    Load deliverable policies from a JSON file.

    Raises:
        ConfigurationError: If the file is missing, unparseable or invalid
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Deliverable config not found: {path}") from e
    except ValueError as e:
        raise ConfigurationError(f"Deliverable config is not valid JSON: {e}") from e

    policies = {}
    for entry in data.get("deliverables", []):
        policy = DeliverableGradingPolicy.from_dict(entry)
        policies[policy.deliverable_id] = policy
    return policies
