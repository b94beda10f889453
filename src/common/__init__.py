"""
Shared utilities for the log sink daemon.
Import surface: `from common import Settings, load_settings`.
"""

from .settings import ConfigError, Settings, load_settings

__all__ = [
    "ConfigError",
    "Settings",
    "load_settings",
]
