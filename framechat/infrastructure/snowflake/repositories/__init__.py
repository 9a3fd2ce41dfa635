"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
The in-memory variants back mock mode.
"""

from .conversations import SnowflakeConversationRepository
from .mock import InMemoryConversationRepository, InMemoryVideoRepository
from .videos import SnowflakeVideoRepository

__all__ = [
    "InMemoryConversationRepository",
    "InMemoryVideoRepository",
    "SnowflakeConversationRepository",
    "SnowflakeVideoRepository",
]
