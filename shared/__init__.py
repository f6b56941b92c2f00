"""Shared library for the wallbox bridge services."""

from shared.config import Settings
from shared.log import get_logger

__all__ = ["Settings", "get_logger"]
