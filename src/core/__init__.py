"""
Core utilities shared across the application.
"""

from .concurrency import CallResult, fan_out, run_with_timeout
from .database import PostgresConnection
from .logger import setup_logging

__all__ = ["CallResult", "PostgresConnection", "fan_out", "run_with_timeout", "setup_logging"]
