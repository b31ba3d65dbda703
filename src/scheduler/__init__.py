"""
AutoTest scheduling core.

Entities, errors, storage and the commit queue are exported here. The
scheduler, runner and service modules are imported directly
(src.scheduler.dispatcher, src.scheduler.service) because they depend on
src.infra, which itself depends on these entities.
"""

from .entities import (
    DeliveryKind,
    JobState,
    FailureKind,
    CommitTarget,
    QueueEntry,
    Job,
    AutoTestResult,
    Grade,
    NoOp,
    EnqueueOutcome,
)
from .errors import (
    AutoTestError,
    InvalidOperationError,
    JobNotFoundError,
    MalformedEventError,
    UnsupportedEventError,
    RuntimeUnavailableError,
    ContainerTimeoutError,
    MalformedReportError,
    ConfigurationError,
    ImageBuildError,
)
from .persistence import PersistenceAdapter
from .queue_manager import CommitQueue

__all__ = [
    # Entities
    "DeliveryKind",
    "JobState",
    "FailureKind",
    "CommitTarget",
    "QueueEntry",
    "Job",
    "AutoTestResult",
    "Grade",
    "NoOp",
    "EnqueueOutcome",
    # Errors
    "AutoTestError",
    "InvalidOperationError",
    "JobNotFoundError",
    "MalformedEventError",
    "UnsupportedEventError",
    "RuntimeUnavailableError",
    "ContainerTimeoutError",
    "MalformedReportError",
    "ConfigurationError",
    "ImageBuildError",
    # Persistence
    "PersistenceAdapter",
    # Queue
    "CommitQueue",
]
