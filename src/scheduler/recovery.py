"""
Recovery Manager for the AutoTest orchestrator.

Handles crash recovery on startup:
- Jobs persisted as RUNNING lost their worker when the process died
- Each is closed out as ERRORED with a recorded result
- Its container (if any survived) is removed
- Jobs closed without a result (crash between the two writes) get an
  ERRORED result, so the commit can be requested again

The in-memory queue does not survive a restart; lost entries come back
with the provider's next delivery for the commit.

Recovery is idempotent: running multiple times produces same result.
"""

import logging

from src.infra.docker_client import ContainerClient

from .entities import AutoTestResult, FailureKind, JobState
from .errors import InvalidOperationError
from .executor import container_name_for
from .persistence import DataStore
from .recorder import ResultRecorder


logger = logging.getLogger(__name__)

RECOVERY_BATCH_SIZE = 500


class RecoveryManager:
    """Closes out jobs orphaned by a crash."""

    def __init__(
        self,
        store: DataStore,
        recorder: ResultRecorder,
        client: ContainerClient,
    ):
        self.store = store
        self.recorder = recorder
        self.client = client

    def recover_on_startup(self) -> dict:
        """
        Perform recovery before the scheduler starts ticking.

        Returns:
            Recovery statistics
        """
        stats = {
            "running_jobs_recovered": 0,
            "results_repaired": 0,
            "containers_removed": 0,
            "errors": [],
        }

        logger.info("Starting crash recovery...")

        for job in self.store.list_jobs_by_state(JobState.RUNNING, limit=RECOVERY_BATCH_SIZE):
            logger.info(f"Recovering RUNNING job {job.job_id}")
            try:
                self.recorder.record(
                    job,
                    AutoTestResult.create(
                        job,
                        JobState.ERRORED,
                        failure=FailureKind.RECOVERED,
                        error="Orchestrator restarted while job was running",
                    ),
                )
                stats["running_jobs_recovered"] += 1
            except Exception as e:
                logger.error(f"Error recovering job {job.job_id}: {e}")
                stats["errors"].append(f"{job.job_id}: {e}")
                continue

            self.client.remove_container(job.container_name or container_name_for(job))
            stats["containers_removed"] += 1

        for job in self.store.list_terminal_jobs_without_result(limit=RECOVERY_BATCH_SIZE):
            # Job state is write-once; the lost outcome is recorded as ERRORED
            logger.warning(f"Job {job.job_id} closed {job.state.value} without a result")
            try:
                self.store.save_result(
                    AutoTestResult.create(
                        job,
                        JobState.ERRORED,
                        failure=FailureKind.RECOVERED,
                        error=f"Result lost after job closed {job.state.value}",
                    )
                )
                stats["results_repaired"] += 1
            except InvalidOperationError as e:
                logger.error(f"Error repairing result for job {job.job_id}: {e}")
                stats["errors"].append(f"{job.job_id}: {e}")

        logger.info(
            f"Recovery complete: "
            f"{stats['running_jobs_recovered']} running jobs recovered, "
            f"{stats['results_repaired']} missing results repaired, "
            f"{stats['containers_removed']} containers removed"
        )
        return stats
