"""Configuration package."""

from .settings import EngineSettings, configure_logging

__all__ = ["EngineSettings", "configure_logging"]
