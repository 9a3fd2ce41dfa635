"""
Snowflake persistence for videos, frame analyses and conversations.
"""

from .client import SnowflakeConfig, SnowflakeConnectionError, SnowflakeDatabase

__all__ = ["SnowflakeConfig", "SnowflakeConnectionError", "SnowflakeDatabase"]
