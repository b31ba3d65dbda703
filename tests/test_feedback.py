"""Tests for commit-comment feedback."""

import json

import httpx
import pytest

from src.infra.feedback import (
    FEEDBACK_MAX_RETRIES,
    FeedbackDispatcher,
    GitHubCommentChannel,
    format_feedback,
)
from src.scheduler.entities import DeliveryKind, FailureKind, Grade, Job, JobState, AutoTestResult


class RecordingChannel:
    def __init__(self, success: bool = True):
        self.success = success
        self.posts = []

    def post_comment(self, target, text):
        self.posts.append((target, text))
        return (True, None) if self.success else (False, "HTTP 500: boom")


@pytest.fixture
def grade() -> Grade:
    return Grade(
        person_id="alice",
        deliverable_id="d1",
        score=73.55,
        comment="No regressions were applied to this grade.",
        timestamp=1,
    )


@pytest.fixture
def errored_result(make_target):
    job = Job.create(make_target())
    return AutoTestResult.create(
        job, JobState.ERRORED, failure=FailureKind.CONFIG_ERROR, error="no such image"
    )


@pytest.fixture
def clock():
    return {"now": 0.0}


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def dispatcher(channel, clock) -> FeedbackDispatcher:
    return FeedbackDispatcher(channel, window_seconds=60, max_per_window=2, clock=lambda: clock["now"])


class TestFormatFeedback:
    """Tests for format_feedback function."""

    def test_success_with_grade(self, make_result, grade):
        result = make_result()

        text = format_feedback(result, grade)

        assert text.startswith("### AutoTest for `d1` completed")
        assert f"Commit: `{result.target.commit_sha[:7]}`" in text
        assert "- Test score: 80.0" in text
        assert "**Grade: 73.55**" in text
        assert text.endswith("No regressions were applied to this grade.")

    def test_errored_result(self, errored_result):
        text = format_feedback(errored_result)

        assert "could not be run" in text
        assert "- Failure: config_error" in text
        assert "- Error: no such image" in text
        assert "Grade" not in text

    def test_report_feedback_is_included(self, make_result, make_report):
        report = make_report()
        report["feedback"] = "3 tests failed in module `queue`"

        assert "3 tests failed" in format_feedback(make_result(report=report))


class TestGitHubCommentChannel:
    """Tests for GitHubCommentChannel with a mock transport."""

    def make_channel(self, handler, **kwargs) -> GitHubCommentChannel:
        return GitHubCommentChannel(
            api_url="https://api.github.test/",
            token="secret-token",
            transport=httpx.MockTransport(handler),
            sleep=lambda seconds: None,
            **kwargs,
        )

    def test_comment_url_uses_full_name(self, make_target):
        channel = GitHubCommentChannel(api_url="https://api.github.test")
        target = make_target()

        assert channel.comment_url(target) == (
            f"https://api.github.test/repos/org/team_01/commits/{target.commit_sha}/comments"
        )

    def test_comment_url_falls_back_to_repo_id(self, make_target):
        channel = GitHubCommentChannel(api_url="https://api.github.test")
        target = make_target(repo_full_name=None)

        assert "/repos/team_01/commits/" in channel.comment_url(target)

    def test_successful_post(self, make_target):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"id": 1})

        success, error = self.make_channel(handler).post_comment(make_target(), "hello")

        assert success is True
        assert error is None
        assert len(requests) == 1
        assert requests[0].method == "POST"
        assert requests[0].headers["Authorization"] == "token secret-token"
        assert json.loads(requests[0].content) == {"body": "hello"}

    def test_retries_then_succeeds(self, make_target):
        statuses = iter([502, 503, 201])
        sleeps = []

        def handler(request):
            return httpx.Response(next(statuses))

        channel = self.make_channel(handler)
        channel._sleep = sleeps.append

        success, _ = channel.post_comment(make_target(), "hello")

        assert success is True
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_retries(self, make_target):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        success, error = self.make_channel(handler).post_comment(make_target(), "hello")

        assert success is False
        assert error == "HTTP 500: boom"
        assert len(calls) == FEEDBACK_MAX_RETRIES

    def test_request_error(self, make_target):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        success, error = self.make_channel(handler, max_retries=1).post_comment(make_target(), "x")

        assert success is False
        assert error.startswith("Request error")

    def test_timeout(self, make_target):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        success, error = self.make_channel(handler, max_retries=1, timeout=5).post_comment(
            make_target(), "x"
        )

        assert success is False
        assert error == "Timeout after 5s"


class TestFeedbackDispatcher:
    """Tests for FeedbackDispatcher posting rules and rate limit."""

    def test_graded_push_is_posted(self, dispatcher, channel, make_result, grade):
        result = make_result()

        assert dispatcher.dispatch(result.target, result, grade) is True
        assert len(channel.posts) == 1

    def test_ungraded_successful_push_is_silent(self, dispatcher, channel, make_result):
        result = make_result()

        assert dispatcher.dispatch(result.target, result) is False
        assert channel.posts == []

    def test_failed_push_is_posted(self, dispatcher, channel, errored_result):
        assert dispatcher.dispatch(errored_result.target, errored_result) is True

    def test_comment_request_is_always_answered(self, dispatcher, make_result):
        result = make_result(delivery_kind=DeliveryKind.COMMENT, ref="")

        assert dispatcher.should_post(result, None) is True

    def test_rate_limit_per_requester(self, dispatcher, channel, clock, make_result, grade):
        results = [make_result() for _ in range(3)]

        sent = [dispatcher.dispatch(r.target, r, grade) for r in results]

        assert sent == [True, True, False]
        bob = make_result(requested_by="bob")
        assert dispatcher.dispatch(bob.target, bob, grade) is True

    def test_window_slides(self, dispatcher, clock, make_result, grade):
        for _ in range(2):
            result = make_result()
            dispatcher.dispatch(result.target, result, grade)

        clock["now"] = 60.0
        result = make_result()

        assert dispatcher.dispatch(result.target, result, grade) is True

    def test_channel_failure_returns_false(self, clock, make_result, grade):
        dispatcher = FeedbackDispatcher(RecordingChannel(success=False), clock=lambda: clock["now"])
        result = make_result()

        assert dispatcher.dispatch(result.target, result, grade) is False
