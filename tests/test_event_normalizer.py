"""
Tests for webhook payload normalization.
"""

import pytest

from src.events.normalizer import ZERO_SHA, EventNormalizer
from src.grading.portal import StaticClassPortal
from src.scheduler.entities import CommitTarget, DeliveryKind, NoOp
from src.scheduler.errors import MalformedEventError, UnsupportedEventError

T0 = 1_700_000_000_000

SHA = "a" * 40


@pytest.fixture
def two_deliverable_portal(make_policy) -> StaticClassPortal:
    return StaticClassPortal(
        [make_policy(), make_policy(deliverable_id="d2")], default_deliverable="d1"
    )


@pytest.fixture
def normalizer(two_deliverable_portal) -> EventNormalizer:
    return EventNormalizer(two_deliverable_portal, bot_name="autobot", clock=lambda: T0)


def push_payload(**overrides) -> dict:
    payload = {
        "ref": "refs/heads/master",
        "after": SHA,
        "before": "b" * 40,
        "deleted": False,
        "repository": {
            "name": "team_01",
            "full_name": "org/team_01",
            "clone_url": "https://github.com/org/team_01.git",
            "html_url": "https://github.com/org/team_01",
        },
        "pusher": {"name": "alice", "email": "alice@example.com"},
        "head_commit": {"id": SHA, "url": f"https://github.com/org/team_01/commit/{SHA}"},
    }
    payload.update(overrides)
    return payload


def comment_payload(body: str, user: str = "bob") -> dict:
    return {
        "action": "created",
        "comment": {
            "commit_id": SHA,
            "body": body,
            "user": {"login": user},
            "html_url": f"https://github.com/org/team_01/commit/{SHA}#commitcomment-1",
        },
        "repository": {"name": "team_01", "full_name": "org/team_01"},
    }


class TestPushEvents:
    """Push deliveries target the default deliverable."""

    def test_push_builds_target(self, normalizer):
        target = normalizer.normalize("push", push_payload())

        assert isinstance(target, CommitTarget)
        assert target.repo_id == "team_01"
        assert target.deliverable_id == "d1"
        assert target.commit_sha == SHA
        assert target.ref == "refs/heads/master"
        assert target.requested_by == "alice"
        assert target.delivery_kind == DeliveryKind.PUSH
        assert target.timestamp == T0
        assert target.repo_full_name == "org/team_01"
        assert target.clone_url == "https://github.com/org/team_01.git"

    def test_commit_url_falls_back_to_repository_url(self, normalizer):
        target = normalizer.normalize("push", push_payload(head_commit=None))

        assert target.commit_url == f"https://github.com/org/team_01/commit/{SHA}"

    def test_deleted_branch_is_noop(self, normalizer):
        event = normalizer.normalize("push", push_payload(deleted=True))

        assert event == NoOp("branch deleted")

    def test_zero_sha_is_noop(self, normalizer):
        event = normalizer.normalize("push", push_payload(after=ZERO_SHA))

        assert isinstance(event, NoOp)

    def test_missing_pusher_is_malformed(self, normalizer):
        payload = push_payload()
        del payload["pusher"]

        with pytest.raises(MalformedEventError) as exc_info:
            normalizer.normalize("push", payload)

        assert "pusher" in str(exc_info.value)

    def test_missing_repository_name_is_malformed(self, normalizer):
        payload = push_payload(repository={"full_name": "org/team_01"})

        with pytest.raises(MalformedEventError):
            normalizer.normalize("push", payload)


class TestCommentEvents:
    """Commit comments only count when they mention the bot."""

    def test_mention_builds_comment_target(self, normalizer):
        target = normalizer.normalize("commit_comment", comment_payload("@autobot please"))

        assert isinstance(target, CommitTarget)
        assert target.delivery_kind == DeliveryKind.COMMENT
        assert target.requested_by == "bob"
        assert target.deliverable_id == "d1"
        assert target.ref == ""

    def test_mention_is_case_insensitive(self, normalizer):
        target = normalizer.normalize("commit_comment", comment_payload("@AutoBot"))

        assert isinstance(target, CommitTarget)

    def test_longer_handle_is_not_a_mention(self, normalizer):
        event = normalizer.normalize("commit_comment", comment_payload("@autobotics hi"))

        assert isinstance(event, NoOp)

    def test_no_mention_is_noop(self, normalizer):
        event = normalizer.normalize("commit_comment", comment_payload("nice work"))

        assert event == NoOp("bot not mentioned")

    def test_hash_selects_deliverable(self, normalizer):
        target = normalizer.normalize("commit_comment", comment_payload("@autobot #d2"))

        assert target.deliverable_id == "d2"

    def test_unknown_deliverable_is_malformed(self, normalizer):
        with pytest.raises(MalformedEventError) as exc_info:
            normalizer.normalize("commit_comment", comment_payload("@autobot #d9"))

        assert "d9" in str(exc_info.value)

    def test_missing_comment_user_is_malformed(self, normalizer):
        payload = comment_payload("@autobot")
        del payload["comment"]["user"]

        with pytest.raises(MalformedEventError):
            normalizer.normalize("commit_comment", payload)


class TestDispatch:
    def test_ping_is_noop(self, normalizer):
        assert normalizer.normalize("ping", {"zen": "Keep it logically awesome."}) == NoOp("ping")

    def test_unsupported_kind_raises(self, normalizer):
        with pytest.raises(UnsupportedEventError):
            normalizer.normalize("issues", {})

    def test_unsupported_is_a_malformed_event(self, normalizer):
        with pytest.raises(MalformedEventError):
            normalizer.normalize("pull_request", {})
