"""
Models Package

Contains configuration models for the cryo cooler controller.
"""

from .session_config import SessionConfig, ConfigError, CONFIG_VERSION

__all__ = [
    'SessionConfig',
    'ConfigError',
    'CONFIG_VERSION',
]
