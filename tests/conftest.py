"""Shared pytest fixtures and configuration."""
import os

# Settings are read when rollout_engine is imported; keep tests independent of the caller's env.
os.environ.setdefault("RO_WEBHOOK_ENABLED", "false")
os.environ.setdefault("RO_REQUEUE_CAP_SECONDS", "60")

# Pytest markers are defined in pytest.ini
