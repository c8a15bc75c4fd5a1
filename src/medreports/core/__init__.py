"""Core configuration and utilities for medreports."""

from medreports.core.config import settings
from medreports.core.logging import setup_logging

__all__ = ["settings", "setup_logging"]
