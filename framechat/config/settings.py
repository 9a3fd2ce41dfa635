"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Mock modes enable local development without external services.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "FrameChat API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys accepted from the session layer in front of the API."
    )

    # Anthropic Configuration
    anthropic_api_key: str = Field(
        default="",
        description="Claude API key. Required for frame descriptions and chat."
    )
    anthropic_chat_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model that answers questions about a video."
    )
    anthropic_vision_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Vision-capable model that describes individual frames."
    )
    anthropic_chat_max_tokens: int = Field(
        default=500,
        description="Max tokens for chat answers."
    )
    anthropic_vision_max_tokens: int = Field(
        default=300,
        description="Max tokens for a single frame description."
    )
    anthropic_chat_temperature: float = Field(default=0.7)
    anthropic_vision_temperature: float = Field(
        default=0.3,
        description="Frame descriptions should be factual, so keep this low."
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="FRAMECHAT",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="PUBLIC",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory repositories instead of Snowflake. Enables local dev without DB."
    )

    # R2/S3 Storage Configuration
    r2_account_id: str = Field(
        default="",
        description="Cloudflare account ID for R2"
    )
    r2_access_key_id: str = Field(
        default="",
        description="R2 access key ID"
    )
    r2_secret_access_key: str = Field(
        default="",
        description="R2 secret access key"
    )
    r2_bucket_name: str = Field(
        default="framechat-media",
        description="R2 bucket holding source videos and extracted frames"
    )
    r2_endpoint_url: Optional[str] = Field(
        default=None,
        description="R2 endpoint URL. Auto-constructed from account_id if not provided."
    )
    r2_public_base_url: Optional[str] = Field(
        default=None,
        description="Public base URL of the bucket (custom domain or r2.dev). Frame URLs handed to the vision model are built from it."
    )
    r2_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real R2. Enables local dev without object storage."
    )

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    video_processor_mock_mode: bool = Field(
        default=False,
        description="Use placeholder frames instead of FFmpeg."
    )

    # Upload limits
    max_upload_size_mb: int = Field(
        default=50,
        description="Maximum video size in MB."
    )
    max_video_duration_seconds: float = Field(
        default=600.0,
        description="Longest accepted video (10 minutes)."
    )
    allowed_video_types: str = Field(
        default="video/mp4,video/quicktime,video/webm",
        description="Comma-separated list of accepted video content types."
    )

    # Ingestion pipeline tuning
    max_frames: int = Field(
        default=300,
        description="Hard cap on sampled frames per video."
    )
    max_frame_dimension: int = Field(
        default=720,
        description="Frames are downscaled so neither side exceeds this many pixels."
    )
    frame_jpeg_quality: int = Field(
        default=4,
        ge=2,
        le=31,
        description="FFmpeg -q:v value for frame JPEGs (2-31, lower is better)."
    )
    upload_batch_size: int = Field(default=5, ge=1)
    analysis_batch_size: int = Field(default=10, ge=1)
    checkpoint_every_batches: int = Field(
        default=1,
        ge=1,
        description="Persist frame URLs after every N upload batches (the final batch always checkpoints)."
    )

    # Chat
    chat_strategy: Literal["text", "vision"] = Field(
        default="text",
        description="text: answer from stored frame descriptions. vision: send raw frames to the model."
    )
    chat_history_limit: int = Field(default=10, ge=0)
    vision_chat_max_frames: int = Field(default=6, ge=1)

    # Video removal
    video_delete_policy: Literal["soft", "hard"] = Field(
        default="soft",
        description="soft flags the video as removed, hard deletes rows and stored objects."
    )

    # Timeouts for external calls
    storage_timeout_seconds: float = 60.0
    database_timeout_seconds: float = 30.0
    model_timeout_seconds: float = 60.0
    external_call_retries: int = Field(
        default=1,
        ge=0,
        description="How many times a timed-out frame upload or analysis is retried."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def allowed_video_types_list(self) -> list[str]:
        return [t.strip() for t in self.allowed_video_types.split(",") if t.strip()]

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def r2_endpoint(self) -> str:
        """
        Construct R2 endpoint URL from account ID.

        R2 endpoints follow the pattern: https://{account_id}.r2.cloudflarestorage.com
        """
        if self.r2_endpoint_url:
            return self.r2_endpoint_url
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on whether we're in mock mode.
        """
        missing = []

        # No mock for the model provider
        if not self.anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY")

        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            has_key = self.snowflake_private_key_path or self.snowflake_private_key_base64
            if not self.snowflake_password and not has_key:
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if not self.r2_mock_mode:
            if not self.r2_account_id and not self.r2_endpoint_url:
                missing.append("R2_ACCOUNT_ID")
            if not self.r2_access_key_id:
                missing.append("R2_ACCESS_KEY_ID")
            if not self.r2_secret_access_key:
                missing.append("R2_SECRET_ACCESS_KEY")
            if not self.r2_public_base_url:
                missing.append("R2_PUBLIC_BASE_URL")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
