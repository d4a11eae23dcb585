"""
Global pytest configuration and fixtures for Mirza platform tests.
"""

import os

import pytest
import structlog

# Keep tests away from a developer .env and the default SQLite file
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")


@pytest.fixture(autouse=True)
def reset_global_config():
    """Drop cached settings, billing config and logging setup between tests."""
    from mirza.platform.billing.config import set_billing_config
    from mirza.platform.settings import reset_settings

    reset_settings()
    set_billing_config(None)
    structlog.reset_defaults()
    yield
    reset_settings()
    set_billing_config(None)
    structlog.reset_defaults()
