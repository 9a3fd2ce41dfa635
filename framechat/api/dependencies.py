"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Tests swap the five external clients with app.dependency_overrides
- Configuration is centralized

External clients (database, storage, model provider, video processor)
are created once per process and shared. The core services built on
top of them are cheap and created per request.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.conversation import (
    ContextStrategy,
    ConversationContextBuilder,
    TextGroundedStrategy,
    VisionGroundedStrategy,
)
from ..core.dispatcher import FrameAnalysisDispatcher
from ..core.frames import FrameExtractor
from ..core.ingestion import IngestionPipeline, UploadCoordinator
from ..core.interfaces import (
    CompletionProvider,
    ConversationRepository,
    ObjectStorage,
    VideoProcessor,
    VideoRepository,
)
from ..core.models import AuthenticatedUser
from ..core.streaming import StreamingRelay
from ..core.videos import VideoLibrary
from ..infrastructure.anthropic.client import AnthropicConfig, create_anthropic_client
from ..infrastructure.snowflake.client import SnowflakeConfig, SnowflakeDatabase
from ..infrastructure.snowflake.repositories import (
    InMemoryConversationRepository,
    InMemoryVideoRepository,
    SnowflakeConversationRepository,
    SnowflakeVideoRepository,
)
from ..infrastructure.storage.client import StorageConfig, create_storage_client
from ..infrastructure.video.processor import create_video_processor

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Process-wide clients, created on first use
_database: Optional[SnowflakeDatabase] = None
_mock_video_repository: Optional[InMemoryVideoRepository] = None
_mock_conversation_repository: Optional[InMemoryConversationRepository] = None
_storage_client = None
_completion_provider = None
_video_processor = None


def reset_shared_clients() -> None:
    """Drop every cached client. Called on shutdown and between tests."""
    global _database, _mock_video_repository, _mock_conversation_repository
    global _storage_client, _completion_provider, _video_processor

    if _database is not None:
        _database.close()

    _database = None
    _mock_video_repository = None
    _mock_conversation_repository = None
    _storage_client = None
    _completion_provider = None
    _video_processor = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    The key identifies the session layer in front of this API, not the
    end user. Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8] if api_key else ""}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


async def get_current_user(
    api_key: Annotated[str, Depends(verify_api_key)],
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_name: Annotated[Optional[str], Header()] = None,
    x_user_email: Annotated[Optional[str], Header()] = None,
    x_user_admin: Annotated[Optional[str], Header()] = None,
) -> AuthenticatedUser:
    """
    Identity forwarded by the session layer.

    We trust these headers because the API key proves who sent them.
    Raises 401 when no user id is present.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    return AuthenticatedUser(
        id=x_user_id.strip(),
        name=x_user_name,
        email=x_user_email,
        is_admin=(x_user_admin or "").lower() in ("1", "true", "yes"),
    )


# ---------------------------------------------------------------------------
# External Clients
# ---------------------------------------------------------------------------

def get_database(settings: Settings) -> SnowflakeDatabase:
    global _database

    if _database is None:
        _database = SnowflakeDatabase(SnowflakeConfig(
            account=settings.snowflake_account,
            user=settings.snowflake_user,
            password=settings.snowflake_password or None,
            private_key_path=settings.snowflake_private_key_path,
            private_key_base64=settings.snowflake_private_key_base64,
            database=settings.snowflake_database,
            schema=settings.snowflake_schema,
            warehouse=settings.snowflake_warehouse,
            role=settings.snowflake_role,
        ))
        logger.info("Created Snowflake database handle")
    return _database


def get_video_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> VideoRepository:
    """
    Provide the video repository.

    In mock mode, we reuse the same in-memory repository across requests
    so that data persists during the testing session.
    """
    global _mock_video_repository

    if settings.snowflake_mock_mode:
        if _mock_video_repository is None:
            _mock_video_repository = InMemoryVideoRepository()
        return _mock_video_repository

    return SnowflakeVideoRepository(get_database(settings))


def get_conversation_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ConversationRepository:
    global _mock_conversation_repository

    if settings.snowflake_mock_mode:
        if _mock_conversation_repository is None:
            _mock_conversation_repository = InMemoryConversationRepository()
        return _mock_conversation_repository

    return SnowflakeConversationRepository(get_database(settings))


def get_storage_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ObjectStorage:
    """Provide the R2 client, or the shared in-memory mock."""
    global _storage_client

    if _storage_client is None:
        if settings.r2_mock_mode:
            _storage_client = create_storage_client(mock_mode=True)
        else:
            _storage_client = create_storage_client(config=StorageConfig(
                access_key_id=settings.r2_access_key_id,
                secret_access_key=settings.r2_secret_access_key,
                bucket_name=settings.r2_bucket_name,
                endpoint_url=settings.r2_endpoint,
                public_base_url=settings.r2_public_base_url or "",
            ))
    return _storage_client


def get_completion_provider(
    settings: Annotated[Settings, Depends(get_settings)],
) -> CompletionProvider:
    """Provide the Claude client. 503 if no API key is configured."""
    global _completion_provider

    if _completion_provider is None:
        if not settings.anthropic_api_key:
            logger.error("Anthropic API key not configured")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Model provider is not configured",
            )
        _completion_provider = create_anthropic_client(AnthropicConfig(
            api_key=settings.anthropic_api_key,
            chat_model=settings.anthropic_chat_model,
            vision_model=settings.anthropic_vision_model,
            chat_max_tokens=settings.anthropic_chat_max_tokens,
            vision_max_tokens=settings.anthropic_vision_max_tokens,
            chat_temperature=settings.anthropic_chat_temperature,
            vision_temperature=settings.anthropic_vision_temperature,
        ))
    return _completion_provider


def get_video_processor(
    settings: Annotated[Settings, Depends(get_settings)],
) -> VideoProcessor:
    global _video_processor

    if _video_processor is None:
        _video_processor = create_video_processor(
            mock_mode=settings.video_processor_mock_mode,
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
        )
    return _video_processor


SettingsDep = Annotated[Settings, Depends(get_settings)]
VideoRepositoryDep = Annotated[VideoRepository, Depends(get_video_repository)]
ConversationRepositoryDep = Annotated[ConversationRepository, Depends(get_conversation_repository)]
StorageClientDep = Annotated[ObjectStorage, Depends(get_storage_client)]
CompletionProviderDep = Annotated[CompletionProvider, Depends(get_completion_provider)]
VideoProcessorDep = Annotated[VideoProcessor, Depends(get_video_processor)]


# ---------------------------------------------------------------------------
# Core Services (per request)
# ---------------------------------------------------------------------------

def get_video_library(
    settings: SettingsDep,
    videos: VideoRepositoryDep,
    conversations: ConversationRepositoryDep,
    storage: StorageClientDep,
) -> VideoLibrary:
    return VideoLibrary(
        videos=videos,
        conversations=conversations,
        storage=storage,
        delete_policy=settings.video_delete_policy,
        database_timeout=settings.database_timeout_seconds,
        storage_timeout=settings.storage_timeout_seconds,
    )


def get_frame_dispatcher(
    settings: SettingsDep,
    provider: CompletionProviderDep,
    videos: VideoRepositoryDep,
) -> FrameAnalysisDispatcher:
    """
    A new dispatcher per request.

    The de-dup set lives on the dispatcher, so it is scoped to one
    request (or one background upload), never shared between users.
    """
    return FrameAnalysisDispatcher(
        provider=provider,
        videos=videos,
        batch_size=settings.analysis_batch_size,
        model_timeout=settings.model_timeout_seconds,
        database_timeout=settings.database_timeout_seconds,
        retries=settings.external_call_retries,
    )


def get_ingestion_pipeline(
    settings: SettingsDep,
    videos: VideoRepositoryDep,
    storage: StorageClientDep,
    processor: VideoProcessorDep,
    provider: CompletionProviderDep,
) -> IngestionPipeline:
    extractor = FrameExtractor(
        processor=processor,
        max_frames=settings.max_frames,
        max_dimension=settings.max_frame_dimension,
        quality=settings.frame_jpeg_quality,
    )
    coordinator = UploadCoordinator(
        storage=storage,
        videos=videos,
        batch_size=settings.upload_batch_size,
        checkpoint_every=settings.checkpoint_every_batches,
        storage_timeout=settings.storage_timeout_seconds,
        database_timeout=settings.database_timeout_seconds,
        retries=settings.external_call_retries,
    )
    return IngestionPipeline(
        extractor=extractor,
        coordinator=coordinator,
        videos=videos,
        dispatcher_factory=lambda: get_frame_dispatcher(settings, provider, videos),
        max_duration_seconds=settings.max_video_duration_seconds,
        database_timeout=settings.database_timeout_seconds,
    )


def get_context_strategy(
    settings: SettingsDep,
    videos: VideoRepositoryDep,
) -> ContextStrategy:
    if settings.chat_strategy == "vision":
        return VisionGroundedStrategy(max_frames=settings.vision_chat_max_frames)
    return TextGroundedStrategy(videos)


def get_context_builder(
    settings: SettingsDep,
    library: Annotated[VideoLibrary, Depends(get_video_library)],
    conversations: ConversationRepositoryDep,
    strategy: Annotated[ContextStrategy, Depends(get_context_strategy)],
) -> ConversationContextBuilder:
    return ConversationContextBuilder(
        library=library,
        conversations=conversations,
        strategy=strategy,
        history_limit=settings.chat_history_limit,
        database_timeout=settings.database_timeout_seconds,
    )


def get_streaming_relay(
    settings: SettingsDep,
    provider: CompletionProviderDep,
    conversations: ConversationRepositoryDep,
) -> StreamingRelay:
    return StreamingRelay(
        provider=provider,
        conversations=conversations,
        model_timeout=settings.model_timeout_seconds,
        database_timeout=settings.database_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
VideoLibraryDep = Annotated[VideoLibrary, Depends(get_video_library)]
FrameDispatcherDep = Annotated[FrameAnalysisDispatcher, Depends(get_frame_dispatcher)]
IngestionPipelineDep = Annotated[IngestionPipeline, Depends(get_ingestion_pipeline)]
ContextBuilderDep = Annotated[ConversationContextBuilder, Depends(get_context_builder)]
StreamingRelayDep = Annotated[StreamingRelay, Depends(get_streaming_relay)]
