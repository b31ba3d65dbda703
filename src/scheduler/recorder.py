"""
Result Recorder.

Persists a finished run and closes out the job record. Results are
write-once: a second outcome for the same job (e.g. a runner finishing
after its lease already expired) is discarded.
"""

import logging
from typing import Optional

from .entities import AutoTestResult, Job
from .errors import InvalidOperationError
from .persistence import DataStore


logger = logging.getLogger(__name__)


class ResultRecorder:
    """Writes AutoTestResults and terminal job states."""

    def __init__(self, store: DataStore):
        self.store = store

    def record(self, job: Job, result: AutoTestResult) -> Optional[AutoTestResult]:
        """
        Record a terminal result for a job.

        Returns:
            The stored result, or None if the job already had an outcome
        """
        # Closing the job claims the outcome; a crash before the result is
        # saved is repaired by RecoveryManager
        if not self.store.finish_job(job.job_id, result.state, error=result.error):
            logger.warning(
                f"Job {job.job_id} already terminal; discarding late {result.state.value} outcome"
            )
            return None

        try:
            self.store.save_result(result)
        except InvalidOperationError as e:
            logger.warning(f"Duplicate result for job {job.job_id} skipped: {e}")
            return None

        logger.info(
            f"Recorded {result.state.value} result {result.result_id} for "
            f"{job.target.repo_id}@{job.target.commit_sha[:8]}"
        )
        return result
