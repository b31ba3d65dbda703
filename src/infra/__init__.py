"""
Infrastructure module - configuration, logging, container runtime, and feedback.
"""

from .logging_config import setup_logging

__all__ = ["setup_logging"]
