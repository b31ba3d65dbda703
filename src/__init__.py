"""AutoTest - continuous testing orchestrator for student repositories."""

__version__ = "1.0.0"
