"""Core module for configuration and utilities."""

from mediaforge.core.config import settings
from mediaforge.core.database import Base

__all__ = [
    "settings",
    "Base",
]
