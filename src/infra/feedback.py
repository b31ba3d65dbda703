"""
Feedback posting for finished AutoTest runs.

Results are posted back to the triggering commit as a GitHub commit comment.
Posting is rate-limited per requester with a sliding window so a student
cannot flood the bot with requests.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Protocol

import httpx

from src.infra import config
from src.scheduler.entities import (
    AutoTestResult,
    CommitTarget,
    DeliveryKind,
    Grade,
    JobState,
)

logger = logging.getLogger(__name__)

FEEDBACK_TIMEOUT_SECONDS = 30
FEEDBACK_MAX_RETRIES = 3
FEEDBACK_RETRY_BASE_DELAY = 1.0  # seconds
FEEDBACK_RETRY_MAX_DELAY = 10.0  # seconds

STATE_LABELS = {
    JobState.SUCCEEDED: "completed",
    JobState.FAILED: "failed",
    JobState.TIMED_OUT: "timed out",
    JobState.ERRORED: "could not be run",
}


class FeedbackChannel(Protocol):
    """Where feedback text ends up."""

    def post_comment(self, target: CommitTarget, text: str) -> tuple[bool, Optional[str]]: ...


def format_feedback(result: AutoTestResult, grade: Optional[Grade] = None) -> str:
    """Render a result (and its grade, if any) as markdown."""
    target = result.target
    label = STATE_LABELS.get(result.state, result.state.value)
    lines = [f"### AutoTest for `{target.deliverable_id}` {label}", ""]
    lines.append(f"Commit: `{target.commit_sha[:7]}`")

    if result.report is not None:
        lines.append(f"- Test score: {result.report.get('scoreTest', 0)}")
        lines.append(f"- Overall score: {result.report.get('scoreOverall', 0)}")
        feedback = result.report.get("feedback")
        if feedback:
            lines.extend(["", str(feedback)])

    if result.failure is not None:
        lines.append(f"- Failure: {result.failure.value}")
    if result.error:
        lines.append(f"- Error: {result.error}")

    if grade is not None:
        lines.extend(["", f"**Grade: {grade.score:g}**"])
        if grade.comment:
            lines.append(grade.comment)

    return "\n".join(lines)


class GitHubCommentChannel:
    """Posts commit comments through the GitHub REST API."""

    def __init__(
        self,
        api_url: str = config.GITHUB_API_URL,
        token: str = config.GITHUB_TOKEN,
        timeout: float = FEEDBACK_TIMEOUT_SECONDS,
        max_retries: int = FEEDBACK_MAX_RETRIES,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._sleep = sleep

    def comment_url(self, target: CommitTarget) -> str:
        repo = target.repo_full_name or target.repo_id
        return f"{self.api_url}/repos/{repo}/commits/{target.commit_sha}/comments"

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "AutoTest/1.0",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def post_comment(self, target: CommitTarget, text: str) -> tuple[bool, Optional[str]]:
        """
        POST a commit comment with retry logic.

        Returns:
            Tuple of (success: bool, error_message: Optional[str])
        """
        url = self.comment_url(target)
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                    response = client.post(url, json={"body": text}, headers=self._headers())

                if 200 <= response.status_code < 300:
                    logger.info(
                        f"Feedback posted to {target.repo_id}@{target.commit_sha[:8]} "
                        f"(attempt {attempt + 1}/{self.max_retries}, status={response.status_code})"
                    )
                    return True, None

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(
                    f"Feedback post failed for {target.repo_id}@{target.commit_sha[:8]} "
                    f"(attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )

            except httpx.TimeoutException:
                last_error = f"Timeout after {self.timeout}s"
                logger.warning(
                    f"Feedback post timeout for {target.repo_id}@{target.commit_sha[:8]} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )

            except httpx.RequestError as e:
                last_error = f"Request error: {str(e)}"
                logger.warning(
                    f"Feedback post request error for {target.repo_id}@{target.commit_sha[:8]} "
                    f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                )

            # Exponential backoff before retry
            if attempt < self.max_retries - 1:
                delay = min(
                    FEEDBACK_RETRY_BASE_DELAY * (2 ** attempt),
                    FEEDBACK_RETRY_MAX_DELAY,
                )
                logger.debug(f"Retrying feedback post in {delay}s...")
                self._sleep(delay)

        logger.error(
            f"Feedback post failed after {self.max_retries} attempts "
            f"for {target.repo_id}@{target.commit_sha[:8]}: {last_error}"
        )
        return False, last_error


class FeedbackDispatcher:
    """
    Decides whether a result is posted and enforces the per-requester limit.

    Comment-triggered runs are always answered. Push-triggered runs are only
    posted when something went wrong or a grade was computed.
    """

    def __init__(
        self,
        channel: FeedbackChannel,
        window_seconds: float = config.FEEDBACK_WINDOW_SECONDS,
        max_per_window: int = config.FEEDBACK_MAX_PER_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self.window_seconds = window_seconds
        self.max_per_window = max_per_window
        self._clock = clock
        self._sent: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def should_post(self, result: AutoTestResult, grade: Optional[Grade]) -> bool:
        if result.target.delivery_kind == DeliveryKind.COMMENT:
            return True
        return result.state != JobState.SUCCEEDED or grade is not None

    def _acquire(self, requester: str) -> bool:
        now = self._clock()
        with self._lock:
            sent = self._sent[requester]
            while sent and now - sent[0] >= self.window_seconds:
                sent.popleft()
            if len(sent) >= self.max_per_window:
                return False
            sent.append(now)
            return True

    def dispatch(
        self,
        target: CommitTarget,
        result: AutoTestResult,
        grade: Optional[Grade] = None,
    ) -> bool:
        """
        Post feedback for a result.

        Returns:
            True if a comment was posted
        """
        if not self.should_post(result, grade):
            logger.debug(f"No feedback needed for {target.repo_id}@{target.commit_sha[:8]}")
            return False

        if not self._acquire(target.requested_by):
            logger.info(
                f"Feedback rate limit reached for {target.requested_by} "
                f"({self.max_per_window} per {self.window_seconds:g}s)"
            )
            return False

        text = format_feedback(result, grade)
        success, error = self.channel.post_comment(target, text)
        if not success:
            logger.warning(f"Feedback not delivered for {target.repo_id}: {error}")
        return success
