"""Core module: settings, logging, error handling and endpoint tracking."""

from src.core.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
