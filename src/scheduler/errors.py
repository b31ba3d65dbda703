"""
AutoTest exceptions.

Soft outcomes (a duplicate enqueue, a NoOp event) are return values, not
exceptions. Everything here is either surfaced to the caller (malformed
events, configuration) or converted into a terminal result by the runner.
"""


class AutoTestError(Exception):
    """Base exception for all orchestrator errors."""
    pass


class InvalidOperationError(AutoTestError):
    """
    Raised when an operation violates an orchestrator invariant.

    Examples:
    - Moving a Job out of a terminal state
    - Writing a second result for the same job
    """
    pass


class JobNotFoundError(AutoTestError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class MalformedEventError(AutoTestError):
    """Raised when a webhook payload is unparseable or missing required fields."""

    def __init__(self, event_kind: str, detail: str):
        self.event_kind = event_kind
        self.detail = detail
        super().__init__(f"Malformed {event_kind} event: {detail}")


class UnsupportedEventError(MalformedEventError):
    """Raised for webhook event kinds the orchestrator does not handle."""

    def __init__(self, event_kind: str):
        super().__init__(event_kind, "unhandled event kind")


class RuntimeUnavailableError(AutoTestError):
    """Raised when the container runtime cannot be reached."""
    pass


class ContainerTimeoutError(AutoTestError):
    """Raised when a container exceeds its wall-clock budget."""

    def __init__(self, container_name: str, timeout_seconds: float):
        self.container_name = container_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Container {container_name} exceeded {timeout_seconds}s timeout"
        )


class MalformedReportError(AutoTestError):
    """
    Raised when a test report lacks scoreTest, scoreOverall or custom.

    Blocks grading of that one result only.
    """
    pass


class ConfigurationError(AutoTestError):
    """
    Raised for invalid deliverable configuration.

    Examples:
    - public + private test counts sum to zero
    - unknown deliverable id
    """
    pass


class ImageBuildError(AutoTestError):
    """Raised when the container runtime fails to build a harness image."""

    def __init__(self, tag: str, detail: str):
        self.tag = tag
        self.detail = detail
        super().__init__(f"Image build failed for {tag}: {detail}")
