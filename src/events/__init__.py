"""
Webhook event intake - payload models and normalization to CommitTargets.
"""

from .normalizer import (
    EVENT_COMMIT_COMMENT,
    EVENT_PING,
    EVENT_PUSH,
    EventNormalizer,
)

__all__ = [
    "EVENT_COMMIT_COMMENT",
    "EVENT_PING",
    "EVENT_PUSH",
    "EventNormalizer",
]
