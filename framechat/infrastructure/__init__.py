"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- anthropic: Claude API client (frame descriptions and chat)
- snowflake: Database persistence (plus in-memory mock repositories)
- storage: Object storage (R2/S3)
- video: FFmpeg frame rendering

These wrappers translate between external formats and our domain models.
"""
