"""
Turns raw GitHub webhook payloads into CommitTargets.

Push events target the default deliverable on the pushed ref. Commit comments
only count when they mention the bot; `#<deliverable>` in the body selects a
deliverable other than the default. Comment targets carry an empty ref so
they never take part in regression history.
"""

import logging
import re
from typing import Callable, Union

from pydantic import ValidationError

from src.grading.portal import ClassPortal
from src.infra import config
from src.scheduler.entities import CommitTarget, DeliveryKind, NoOp, now_ms
from src.scheduler.errors import (
    ConfigurationError,
    MalformedEventError,
    UnsupportedEventError,
)

from .payloads import CommitCommentPayload, PushPayload

logger = logging.getLogger(__name__)

EVENT_PUSH = "push"
EVENT_COMMIT_COMMENT = "commit_comment"
EVENT_PING = "ping"

ZERO_SHA = "0" * 40
DELIVERABLE_PATTERN = re.compile(r"#([A-Za-z0-9_\-]+)")

NormalizedEvent = Union[CommitTarget, NoOp]


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}"


class EventNormalizer:
    """Validates webhook payloads and builds CommitTargets from them."""

    def __init__(
        self,
        portal: ClassPortal,
        bot_name: str = config.BOT_NAME,
        clock: Callable[[], int] = now_ms,
    ):
        self.portal = portal
        self.bot_name = bot_name
        self._clock = clock
        self._mention = re.compile(rf"@{re.escape(bot_name)}\b", re.IGNORECASE)

    def normalize_push(self, payload: dict) -> NormalizedEvent:
        try:
            push = PushPayload.model_validate(payload)
        except ValidationError as e:
            raise MalformedEventError(EVENT_PUSH, _describe(e)) from e

        if push.deleted or push.after == ZERO_SHA:
            logger.info(f"Ignoring branch deletion of {push.ref} in {push.repository.name}")
            return NoOp("branch deleted")

        commit_url = None
        if push.head_commit is not None:
            commit_url = push.head_commit.url
        if commit_url is None and push.repository.html_url:
            commit_url = f"{push.repository.html_url}/commit/{push.after}"

        return CommitTarget(
            repo_id=push.repository.name,
            deliverable_id=self.portal.default_deliverable_id(),
            commit_sha=push.after,
            ref=push.ref,
            requested_by=push.pusher.name,
            delivery_kind=DeliveryKind.PUSH,
            timestamp=self._clock(),
            commit_url=commit_url,
            clone_url=push.repository.clone_url,
            repo_full_name=push.repository.full_name,
        )

    def normalize_comment(self, payload: dict) -> NormalizedEvent:
        try:
            event = CommitCommentPayload.model_validate(payload)
        except ValidationError as e:
            raise MalformedEventError(EVENT_COMMIT_COMMENT, _describe(e)) from e

        body = event.comment.body
        if not self._mention.search(body):
            return NoOp("bot not mentioned")

        match = DELIVERABLE_PATTERN.search(body)
        if match:
            deliverable_id = match.group(1)
            try:
                self.portal.get_policy(deliverable_id)
            except ConfigurationError as e:
                raise MalformedEventError(EVENT_COMMIT_COMMENT, str(e)) from e
        else:
            deliverable_id = self.portal.default_deliverable_id()

        return CommitTarget(
            repo_id=event.repository.name,
            deliverable_id=deliverable_id,
            commit_sha=event.comment.commit_id,
            ref="",
            requested_by=event.comment.user.login,
            delivery_kind=DeliveryKind.COMMENT,
            timestamp=self._clock(),
            commit_url=event.comment.html_url,
            clone_url=event.repository.clone_url,
            repo_full_name=event.repository.full_name,
        )

    def normalize(self, event_kind: str, payload: dict) -> NormalizedEvent:
        """
        Dispatch on the X-GitHub-Event kind.

        Raises:
            UnsupportedEventError: For kinds other than ping/push/commit_comment
            MalformedEventError: If the payload is missing required fields
        """
        if event_kind == EVENT_PING:
            return NoOp("ping")
        if event_kind == EVENT_PUSH:
            return self.normalize_push(payload)
        if event_kind == EVENT_COMMIT_COMMENT:
            return self.normalize_comment(payload)
        raise UnsupportedEventError(event_kind)
