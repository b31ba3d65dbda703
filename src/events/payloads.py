"""
GitHub webhook payload models.

Only the fields the orchestrator reads are declared; everything else in the
delivery is ignored.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Repository(_Payload):
    name: str = Field(..., min_length=1, description="Repository name (used as repo id)")
    full_name: Optional[str] = Field(default=None, description="owner/name")
    clone_url: Optional[str] = None
    html_url: Optional[str] = None


class Pusher(_Payload):
    name: str = Field(..., min_length=1)


class HeadCommit(_Payload):
    id: str
    url: Optional[str] = None
    timestamp: Optional[str] = None


class PushPayload(_Payload):
    """Body of a `push` delivery."""

    ref: str = Field(..., min_length=1)
    after: str = Field(..., min_length=1, description="SHA the ref now points at")
    deleted: bool = False
    repository: Repository
    pusher: Pusher
    head_commit: Optional[HeadCommit] = None


class CommentUser(_Payload):
    login: str = Field(..., min_length=1)


class Comment(_Payload):
    commit_id: str = Field(..., min_length=1)
    body: str = ""
    user: CommentUser
    html_url: Optional[str] = None


class CommitCommentPayload(_Payload):
    """Body of a `commit_comment` delivery."""

    comment: Comment
    repository: Repository
