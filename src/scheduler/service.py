"""
AutoTest Service - Main entry point for the orchestrator.

This service wires all components together:
- PersistenceAdapter (storage)
- EventNormalizer (webhook intake)
- Scheduler (queue + concurrency control)
- ContainerRunner (job execution)
- ResultRecorder / RecoveryManager (results and crash recovery)
- GradeComputer (grading)
- FeedbackDispatcher (commit comments)

Usage:
    service = AutoTestService.create(db_path, deliverables_path)
    service.start()
    # ... webhooks call handle_event(), a background thread ticks ...
    service.stop()
"""

import logging
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, Optional, Union

from src.events.normalizer import EVENT_PING, EventNormalizer
from src.grading.computer import GradeComputer, ReleaseSummary
from src.grading.portal import ClassPortal, StaticClassPortal
from src.grading.retro import RetroEntry, entries_from_survey
from src.infra import config
from src.infra.docker_client import DockerCliClient, authenticated_remote
from src.infra.feedback import FeedbackDispatcher, GitHubCommentChannel

from .dispatcher import Scheduler, SchedulerStatus
from .entities import (
    COMPLETED_STATES,
    AutoTestResult,
    CommitTarget,
    DeliveryKind,
    EnqueueOutcome,
    Job,
    NoOp,
)
from .errors import ConfigurationError, MalformedReportError
from .executor import ContainerRunner
from .persistence import PersistenceAdapter
from .recorder import ResultRecorder
from .recovery import RecoveryManager


logger = logging.getLogger(__name__)

LIVE_LOG_LINES = 200


class LiveLogBuffer:
    """Tail of container output for jobs that are still running."""

    def __init__(self, max_lines: int = LIVE_LOG_LINES):
        self.max_lines = max_lines
        self._lines: Dict[str, Deque[str]] = {}
        self._lock = threading.Lock()

    def append(self, job: Job, line: str) -> None:
        with self._lock:
            buffer = self._lines.get(job.job_id)
            if buffer is None:
                buffer = self._lines[job.job_id] = deque(maxlen=self.max_lines)
            buffer.append(line)

    def get(self, job_id: str) -> list[str]:
        with self._lock:
            return list(self._lines.get(job_id, ()))

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._lines.pop(job_id, None)


class AutoTestService:
    """
    Main service that coordinates all orchestrator components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery and a periodic tick thread
    - Webhook intake, grading and feedback on completion
    """

    def __init__(
        self,
        store: PersistenceAdapter,
        portal: ClassPortal,
        normalizer: EventNormalizer,
        scheduler: Scheduler,
        recovery_manager: RecoveryManager,
        grade_computer: GradeComputer,
        feedback: Optional[FeedbackDispatcher] = None,
        docker: Optional[DockerCliClient] = None,
        live_logs: Optional[LiveLogBuffer] = None,
    ):
        """
        Initialize AutoTestService with all components.

        Use AutoTestService.create() for convenient construction.
        """
        self.store = store
        self.portal = portal
        self.normalizer = normalizer
        self.scheduler = scheduler
        self.recovery_manager = recovery_manager
        self.grade_computer = grade_computer
        self.feedback = feedback
        self.docker = docker
        self.live_logs = live_logs or LiveLogBuffer()

        self.scheduler.set_on_job_finished(self._on_job_finished)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def create(
        cls,
        db_path: str | Path = config.AUTOTEST_DB_PATH,
        deliverables_path: str | Path = config.DELIVERABLES_PATH,
        max_concurrent_jobs: int = config.MAX_CONCURRENT_JOBS,
    ) -> "AutoTestService":
        """
        Create an AutoTestService with all components wired together.

        Args:
            db_path: Path to SQLite database
            deliverables_path: JSON file with deliverable grading policies
            max_concurrent_jobs: Global cap on running containers

        Returns:
            Configured AutoTestService
        """
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        store = PersistenceAdapter(db_path)
        portal = StaticClassPortal.from_file(
            deliverables_path, config.DEFAULT_DELIVERABLE_ID or None
        )
        docker = DockerCliClient()
        live_logs = LiveLogBuffer()

        runner = ContainerRunner(docker, portal, on_output=live_logs.append)
        recorder = ResultRecorder(store)
        scheduler = Scheduler(
            store=store,
            runner=runner,
            recorder=recorder,
            portal=portal,
            probe=docker,
            max_concurrent_jobs=max_concurrent_jobs,
        )

        feedback = None
        if config.GITHUB_TOKEN:
            feedback = FeedbackDispatcher(GitHubCommentChannel())
        else:
            logger.warning("GITHUB_TOKEN not set; feedback comments are disabled")

        return cls(
            store=store,
            portal=portal,
            normalizer=EventNormalizer(portal),
            scheduler=scheduler,
            recovery_manager=RecoveryManager(store, recorder, docker),
            grade_computer=GradeComputer(store, portal),
            feedback=feedback,
            docker=docker,
            live_logs=live_logs,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(
        self,
        run_recovery: bool = True,
        tick_interval: float = config.TICK_INTERVAL_SECONDS,
    ) -> dict:
        """
        Start the periodic tick thread.

        Args:
            run_recovery: Whether to run crash recovery first
            tick_interval: Seconds between background ticks

        Returns:
            Recovery statistics if recovery was run
        """
        if self.is_running:
            raise RuntimeError("AutoTest service already started")

        logger.info("Starting AutoTest service...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery_manager.recover_on_startup()

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._tick_loop,
            args=(tick_interval,),
            name="autotest-ticker",
            daemon=True,
        )
        self._thread.start()

        logger.info(f"AutoTest service started (tick every {tick_interval}s)")
        return recovery_stats

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the tick thread.

        Running containers are not preempted; they finish on their own
        threads and are recorded as usual.
        """
        if self._thread is None:
            return

        logger.info("Stopping AutoTest service...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Tick thread did not stop within timeout")
        self._thread = None
        logger.info("AutoTest service stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _tick_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.scheduler.tick()
            except Exception as e:
                logger.error(f"Error in tick loop: {e}", exc_info=True)
            self._stop_event.wait(interval)

    # =========================================================================
    # Intake
    # =========================================================================

    def handle_event(self, event_kind: str, payload: dict) -> Union[CommitTarget, NoOp]:
        """
        Process one webhook delivery.

        A comment on a commit whose result is already recorded re-posts that
        result instead of running the container again.

        Raises:
            UnsupportedEventError: For unhandled event kinds
            MalformedEventError: If the payload is malformed
        """
        if event_kind == EVENT_PING:
            return NoOp("ping")

        event = self.normalizer.normalize(event_kind, payload)
        if isinstance(event, NoOp):
            logger.info(f"No work for {event_kind} event: {event.reason}")
            return event

        if event.delivery_kind == DeliveryKind.COMMENT and self._repost_existing(event):
            return event

        self.enqueue(event)
        self.scheduler.tick()
        return event

    def enqueue(self, target: CommitTarget) -> EnqueueOutcome:
        outcome = self.scheduler.enqueue(target)
        if not outcome.accepted:
            logger.info(
                f"Not queueing {target.repo_id}@{target.commit_sha[:8]}: {outcome.reason}"
            )
        return outcome

    def _repost_existing(self, target: CommitTarget) -> bool:
        result = self.store.get_latest_result_for(target)
        if result is None or result.state not in COMPLETED_STATES:
            return False

        logger.info(f"Re-posting stored result {result.result_id} for {target.requested_by}")
        if self.feedback is not None:
            grade = self.store.get_grade(result.target.requested_by, target.deliverable_id)
            if grade is not None and grade.result_id != result.result_id:
                grade = None
            self.feedback.dispatch(target, result, grade)
        return True

    def tick(self) -> None:
        self.scheduler.tick()

    # =========================================================================
    # Completion
    # =========================================================================

    def _on_job_finished(self, job: Job, result: AutoTestResult) -> None:
        self.live_logs.discard(job.job_id)

        grade = None
        if result.is_gradable:
            try:
                grade = self.grade_computer.grade_result(result)
            except ConfigurationError as e:
                logger.error(f"Cannot grade result {result.result_id}: {e}")
            except MalformedReportError as e:
                logger.error(f"Result {result.result_id} has an unusable report: {e}")

        if self.feedback is not None:
            self.feedback.dispatch(result.target, result, grade)

    # =========================================================================
    # Queries and admin
    # =========================================================================

    def get_status(self) -> SchedulerStatus:
        return self.scheduler.get_status()

    def get_job_detail(self, job_id: str) -> Optional[dict]:
        """Job record, its result if recorded, and live output while running."""
        job = self.store.get_job(job_id)
        if job is None:
            return None
        result = self.store.get_result_for_job(job_id)
        return {
            "job": job,
            "result": result,
            "live_log": self.live_logs.get(job_id),
        }

    def release_deliverable(
        self,
        deliverable_id: str,
        retro_entries: Optional[dict[str, RetroEntry]] = None,
        commit: bool = False,
        test_user: Optional[str] = None,
        survey: Optional[Iterable[dict]] = None,
        contributors: Iterable[str] = (),
    ) -> ReleaseSummary:
        """
        Recompute every grade of a deliverable.

        Survey records, when given, are mapped to retro entries through the
        deliverable's retro columns; explicit retro_entries override them.
        """
        if survey is not None:
            policy = self.portal.get_policy(deliverable_id)
            mapped = entries_from_survey(survey, policy, contributors)
            mapped.update(retro_entries or {})
            retro_entries = mapped
        return self.grade_computer.release_deliverable(
            deliverable_id,
            retro_entries=retro_entries,
            commit=commit,
            test_user=test_user,
        )

    def list_images(self) -> list[dict]:
        if self.docker is None:
            raise ConfigurationError("No container runtime configured")
        return self.docker.list_images()

    def build_image(
        self,
        remote: str,
        tag: str,
        dockerfile: Optional[str] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> str:
        if self.docker is None:
            raise ConfigurationError("No container runtime configured")
        remote = authenticated_remote(remote, config.GITHUB_DOCKER_TOKEN)
        return self.docker.build_image(remote, tag, dockerfile=dockerfile, on_output=on_output)
