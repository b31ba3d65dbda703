"""
Environment configuration for the AutoTest orchestrator.

Values are read once at import time. main.py calls load_dotenv() before
importing anything from src, so a local .env file is honoured.
"""

import os


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    """Read an integer env var, falling back to default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(value, minimum)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Storage
AUTOTEST_DB_PATH = os.getenv("AUTOTEST_DB_PATH", "data/autotest.db")
DELIVERABLES_PATH = os.getenv("DELIVERABLES_PATH", "config/deliverables.json")

# Scheduling
MAX_CONCURRENT_JOBS = _int_env("MAX_CONCURRENT_JOBS", 4, minimum=1)
TICK_INTERVAL_SECONDS = _float_env("TICK_INTERVAL_SECONDS", 5.0)
LEASE_GRACE_SECONDS = _int_env("LEASE_GRACE_SECONDS", 60)

# Event intake
DEFAULT_DELIVERABLE_ID = os.getenv("DEFAULT_DELIVERABLE_ID", "")
BOT_NAME = os.getenv("BOT_NAME", "autobot")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

# Container runtime
DOCKER_BIN = os.getenv("DOCKER_BIN", "")
CONTAINER_OUTPUT_ROOT = os.getenv("CONTAINER_OUTPUT_ROOT", "data/runs")
DEFAULT_TIMEOUT_SECONDS = _int_env("DEFAULT_TIMEOUT_SECONDS", 600, minimum=1)
MAX_LOG_BYTES = _int_env("MAX_LOG_BYTES", 64 * 1024, minimum=1024)

# Feedback channel
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
GITHUB_DOCKER_TOKEN = os.getenv("GITHUB_DOCKER_TOKEN", "")
FEEDBACK_WINDOW_SECONDS = _int_env("FEEDBACK_WINDOW_SECONDS", 12 * 60 * 60, minimum=1)
FEEDBACK_MAX_PER_WINDOW = _int_env("FEEDBACK_MAX_PER_WINDOW", 5, minimum=1)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")
