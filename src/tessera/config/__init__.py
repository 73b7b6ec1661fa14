"""
Configuration management for Tessera.

This module handles loading, validating, and saving configuration settings.
"""

from tessera.config.settings import (
    ConfigurationError,
    DatabaseConnection,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "DatabaseConnection",
    "load_config",
    "save_config",
    "ConfigurationError",
]
