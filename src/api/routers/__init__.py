"""
API Routers package.
"""

from . import webhooks, status, admin

__all__ = ["webhooks", "status", "admin"]
