"""
FrameChat - ask questions about your videos.

This package contains the complete application:
- core: Framework-agnostic ingestion and chat logic
- infrastructure: External service integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
