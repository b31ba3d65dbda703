"""
Class portal: read-only access to course configuration.

The orchestrator only ever reads deliverable policies; how they are edited
is someone else's problem.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol

from src.scheduler.errors import ConfigurationError

from .policy import DeliverableGradingPolicy, load_policies

logger = logging.getLogger(__name__)


class ClassPortal(Protocol):
    """Protocol for course configuration lookups."""

    def get_policy(self, deliverable_id: str) -> DeliverableGradingPolicy: ...

    def default_deliverable_id(self) -> str: ...


class StaticClassPortal:
    """ClassPortal backed by an in-memory set of policies."""

    def __init__(
        self,
        policies: Iterable[DeliverableGradingPolicy],
        default_deliverable: Optional[str] = None,
    ):
        self._policies = {p.deliverable_id: p for p in policies}
        self._default = default_deliverable

    @classmethod
    def from_file(
        cls, path: str | Path, default_deliverable: Optional[str] = None
    ) -> "StaticClassPortal":
        policies = load_policies(path)
        for policy in policies.values():
            policy.validate()
        logger.info(f"Loaded {len(policies)} deliverable policies from {path}")
        return cls(policies.values(), default_deliverable)

    def get_policy(self, deliverable_id: str) -> DeliverableGradingPolicy:
        policy = self._policies.get(deliverable_id)
        if policy is None:
            raise ConfigurationError(f"Unknown deliverable: {deliverable_id}")
        return policy

    def default_deliverable_id(self) -> str:
        """
        Deliverable used when an event names none.

        Falls back to the deliverable whose deadline is latest.
        """
        if self._default:
            return self._default
        if not self._policies:
            raise ConfigurationError("No deliverables configured")
        return max(self._policies.values(), key=lambda p: p.close_timestamp).deliverable_id

    def deliverable_ids(self) -> list[str]:
        return sorted(self._policies)
