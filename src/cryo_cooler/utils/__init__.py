"""
Utils Package

Contains utility modules for the cryo cooler controller.
"""

from .logger import setup_logger

__all__ = [
    'setup_logger',
]
