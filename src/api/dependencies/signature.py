"""
GitHub webhook signature verification.

The hook secret configured on GitHub is the sha256 hex digest of
WEBHOOK_SECRET; deliveries carry X-Hub-Signature: sha1=<HMAC-SHA1 of body>.
Verification is skipped when WEBHOOK_SECRET is empty.
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from src.infra import config

logger = logging.getLogger(__name__)

WEBHOOK_SECRET = config.WEBHOOK_SECRET


def compute_signature(secret: str, body: bytes) -> str:
    key = hashlib.sha256(secret.encode("utf-8")).hexdigest().encode("utf-8")
    return "sha1=" + hmac.new(key, body, hashlib.sha1).hexdigest()


async def verify_github_signature(
    request: Request,
    x_hub_signature: Optional[str] = Header(default=None),
) -> None:
    """
    Reject deliveries whose signature does not match.

    Raises:
        HTTPException: 401 if a secret is configured and the signature is
            missing or wrong
    """
    if not WEBHOOK_SECRET:
        logger.debug("WEBHOOK_SECRET not set; skipping signature check")
        return

    body = await request.body()
    expected = compute_signature(WEBHOOK_SECRET, body)
    if not x_hub_signature or not hmac.compare_digest(expected, x_hub_signature):
        logger.warning("Rejected webhook delivery with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )
