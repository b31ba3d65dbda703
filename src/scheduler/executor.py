"""
Container Runner for the AutoTest orchestrator.

- Runs one job: one harness container bound to the commit under test
- Converts every outcome into a terminal AutoTestResult (never raises)
- Guarantees container removal on every exit path

What ContainerRunner MUST NOT do:
- Persist results (ResultRecorder's responsibility)
- Grade results (GradeComputer's responsibility)
- Retry; a failed run is retried only by a new webhook delivery
"""

import logging
from typing import Callable, Optional

from src.grading.portal import ClassPortal
from src.grading.scoring import validate_report
from src.infra.docker_client import ContainerClient, ContainerRun

from .entities import AutoTestResult, FailureKind, Job, JobState
from .errors import (
    ConfigurationError,
    ContainerTimeoutError,
    MalformedReportError,
    RuntimeUnavailableError,
)


logger = logging.getLogger(__name__)

# Sentinel for report fields a timed-out harness never wrote
INCOMPLETE = "incomplete"
REPORT_SCORE_FIELDS = ("scoreTest", "scoreCover", "scoreOverall")


def container_name_for(job: Job) -> str:
    return f"autotest-{job.job_id}"


def fill_incomplete(report: Optional[dict]) -> dict:
    """Copy of a partial report with missing fields set to the sentinel."""
    filled = dict(report or {})
    for name in REPORT_SCORE_FIELDS:
        if filled.get(name) is None:
            filled[name] = INCOMPLETE
    if not isinstance(filled.get("custom"), dict):
        filled["custom"] = {}
    return filled


class ContainerRunner:
    """
    Executes jobs in containers and produces terminal results.

    run() blocks for the life of the container; the Scheduler calls it from
    a per-job worker thread.
    """

    def __init__(
        self,
        client: ContainerClient,
        portal: ClassPortal,
        on_output: Optional[Callable[[Job, str], None]] = None,
    ):
        """
        Initialize ContainerRunner.

        Args:
            client: Container runtime client
            portal: Source of per-deliverable image and timeout
            on_output: Optional live-log consumer, called per output line
        """
        self.client = client
        self.portal = portal
        self._on_output = on_output

    def run(self, job: Job) -> AutoTestResult:
        """
        Run a job to completion.

        Returns:
            Terminal AutoTestResult. Runtime, configuration, timeout and
            report failures are all encoded in the result state.
        """
        name = job.container_name or container_name_for(job)
        try:
            return self._run(job, name)
        except Exception as e:
            logger.exception(f"Unexpected error running job {job.job_id}")
            return AutoTestResult.create(
                job,
                JobState.ERRORED,
                failure=FailureKind.RUNNER_ERROR,
                error=f"Runner error: {e}",
            )
        finally:
            try:
                self.client.remove_container(name)
            except Exception as e:
                logger.error(f"Failed to remove container {name}: {e}")

    def _run(self, job: Job, name: str) -> AutoTestResult:
        target = job.target

        try:
            policy = self.portal.get_policy(target.deliverable_id)
            if not policy.image:
                raise ConfigurationError(f"No harness image for {target.deliverable_id}")
        except ConfigurationError as e:
            logger.error(f"Job {job.job_id} cannot run: {e}")
            return AutoTestResult.create(
                job, JobState.ERRORED, failure=FailureKind.CONFIG_ERROR, error=str(e)
            )

        on_output = None
        if self._on_output is not None:
            def on_output(line: str) -> None:
                self._on_output(job, line)

        try:
            run = self.client.run_container(
                policy.image,
                target,
                policy.timeout_seconds,
                name,
                on_output=on_output,
            )
        except RuntimeUnavailableError as e:
            logger.error(f"Container runtime unavailable for job {job.job_id}: {e}")
            return AutoTestResult.create(
                job,
                JobState.ERRORED,
                failure=FailureKind.RUNTIME_UNAVAILABLE,
                error=f"Container runtime unavailable: {e}",
            )
        except ConfigurationError as e:
            logger.error(f"Job {job.job_id} cannot start its container: {e}")
            return AutoTestResult.create(
                job, JobState.ERRORED, failure=FailureKind.CONFIG_ERROR, error=str(e)
            )

        return self._classify(job, run, policy.timeout_seconds)

    def _classify(self, job: Job, run: ContainerRun, timeout_seconds: float) -> AutoTestResult:
        """Map a finished container run to a terminal result."""
        common = {
            "container_id": run.container_id,
            "exit_code": run.exit_code,
            "log_excerpt": run.logs,
        }

        if run.timed_out:
            error = ContainerTimeoutError(run.container_name, timeout_seconds)
            logger.warning(f"Job {job.job_id}: {error}")
            return AutoTestResult.create(
                job,
                JobState.TIMED_OUT,
                report=fill_incomplete(run.report),
                failure=FailureKind.TIMEOUT,
                error=str(error),
                **common,
            )

        try:
            report = validate_report(run.report)
        except MalformedReportError as e:
            detail = run.report_error or str(e)
            logger.warning(f"Job {job.job_id} produced a malformed report: {detail}")
            return AutoTestResult.create(
                job,
                JobState.ERRORED,
                failure=FailureKind.MALFORMED_REPORT,
                error=f"Malformed report: {detail}",
                **common,
            )

        state = JobState.SUCCEEDED if run.exit_code == 0 else JobState.FAILED
        logger.info(
            f"Job {job.job_id} finished {state.value} "
            f"(exit_code={run.exit_code}, scoreOverall={report.get('scoreOverall')})"
        )
        return AutoTestResult.create(job, state, report=report, **common)
