"""Configuration helpers."""

from change_orchestrator.config.logging_setup import configure_logging
from change_orchestrator.config.settings import Settings, get_settings

__all__ = ["Settings", "configure_logging", "get_settings"]
