"""
Admin API key dependency.

Guards the /admin routes (grade release, harness images). GitHub deliveries
cannot carry a custom header, so /githubWebhook relies on signatures
instead (see signature.py), and /status and /jobs stay open for dashboards.

Enabled with API_AUTH_ENABLED=true; the expected key is API_KEY. Both are
read at import time, so tests reload this module after changing them.
"""

import hmac
import logging
import os
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false").lower() == "true"
API_KEY = os.getenv("API_KEY", "")

admin_key_header = APIKeyHeader(
    name="X-API-Key",
    auto_error=False,
    description="Admin key (required when API_AUTH_ENABLED=true)",
)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def verify_api_key(
    api_key: Optional[str] = Security(admin_key_header),
) -> Optional[str]:
    """
    Check the X-API-Key header of an admin request.

    Returns:
        The accepted key, or None when auth is disabled

    Raises:
        HTTPException: 401 if auth is enabled and the key is missing or wrong
    """
    if not API_AUTH_ENABLED:
        return None

    if not api_key:
        raise _unauthorized("Missing API key. Provide X-API-Key header.")

    if not API_KEY or not hmac.compare_digest(api_key, API_KEY):
        logger.warning("Rejected admin request with an invalid API key")
        raise _unauthorized("Invalid API key")

    return api_key
