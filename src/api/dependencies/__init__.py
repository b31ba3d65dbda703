"""
API Dependencies package.

Cross-cutting concerns: admin authentication, webhook signatures and
service access.
"""

from .auth import verify_api_key, API_AUTH_ENABLED
from .service import get_service
from .signature import verify_github_signature

__all__ = ["verify_api_key", "API_AUTH_ENABLED", "get_service", "verify_github_signature"]
