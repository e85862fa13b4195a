"""
Logging module for the starter.
This module provides the console logging setup shared by all commands.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
