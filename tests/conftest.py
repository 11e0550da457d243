"""Pytest configuration and shared fixtures."""

import os

import pytest

# Set test environment variables before any imports from src
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TRACKING_ACCOUNT", "UA-0000000-1")
os.environ.setdefault("TRACKING_ENABLED", "true")


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    """Reset settings cache before each test."""
    from src.core.config import get_settings

    get_settings.cache_clear()
