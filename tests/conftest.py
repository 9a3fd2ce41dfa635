"""
Shared fixtures.

Everything external is replaced with an in-memory stand-in: repositories,
object storage, the video processor and the model provider. The same
objects are injected into the FastAPI app through dependency_overrides,
so API tests can look inside them after a request.
"""

from typing import AsyncIterator, Optional

import pytest
from fastapi.testclient import TestClient

from framechat.api import dependencies
from framechat.config.settings import Settings, get_settings
from framechat.core.errors import CompletionProviderError
from framechat.core.models import AuthenticatedUser, FrameAnalysis, Video
from framechat.infrastructure.snowflake.repositories import (
    InMemoryConversationRepository,
    InMemoryVideoRepository,
)
from framechat.infrastructure.storage.client import MockStorageClient
from framechat.infrastructure.video.processor import MockVideoProcessor


API_KEY = "test-key"


class FakeCompletionProvider:
    """
    Scripted CompletionProvider.

    describe_image answers from `descriptions` (keyed by URL) or a
    default; URLs in `failing_urls` raise. open_stream replays `deltas`,
    optionally failing before opening or after `fail_after` deltas, and
    counts streams that were closed in `closed_streams`.
    """

    def __init__(
        self,
        deltas: Optional[list[str]] = None,
        default_description: str = "A person standing in a room.",
    ) -> None:
        self.deltas = deltas if deltas is not None else ["Hello", ", ", "world"]
        self.default_description = default_description
        self.descriptions: dict[str, str] = {}
        self.failing_urls: set[str] = set()
        self.fail_on_open = False
        self.fail_after: Optional[int] = None
        self.describe_calls: list[str] = []
        self.stream_calls: list[list[dict]] = []
        self.closed_streams = 0

    @property
    def model_name(self) -> str:
        return "fake-model"

    async def describe_image(self, image_url: str, instruction: str, prompt: str) -> str:
        self.describe_calls.append(image_url)
        if image_url in self.failing_urls:
            raise CompletionProviderError("vision model unavailable")
        return self.descriptions.get(image_url, self.default_description)

    async def open_stream(self, messages: list[dict]) -> AsyncIterator[str]:
        self.stream_calls.append(messages)
        if self.fail_on_open:
            raise CompletionProviderError("chat model unavailable")
        return self._replay()

    async def _replay(self) -> AsyncIterator[str]:
        try:
            for index, delta in enumerate(self.deltas):
                if self.fail_after is not None and index >= self.fail_after:
                    raise CompletionProviderError("connection reset")
                yield delta
        finally:
            self.closed_streams += 1


@pytest.fixture
def user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", name="Ada")


@pytest.fixture
def other_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-2", name="Grace")


@pytest.fixture
def video_repo() -> InMemoryVideoRepository:
    return InMemoryVideoRepository()


@pytest.fixture
def conversation_repo() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def storage() -> MockStorageClient:
    return MockStorageClient()


@pytest.fixture
def provider() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
def processor() -> MockVideoProcessor:
    return MockVideoProcessor(duration_seconds=12.0)


@pytest.fixture
def make_video(video_repo):
    """Store a video and return it. Analyses are added for every frame URL if asked."""
    async def _make(
        user_id: str = "user-1",
        frame_count: int = 3,
        analyzed: bool = True,
        **fields,
    ) -> Video:
        frame_urls = [f"mock://storage/frames/{i}.jpg" for i in range(frame_count)]
        video = Video(
            title=fields.pop("title", "Kitchen tour"),
            user_id=user_id,
            url="mock://storage/videos/source.mp4",
            frame_urls=frame_urls,
            is_processed=analyzed,
            **fields,
        )
        await video_repo.create_video(video)
        if analyzed:
            for position, url in enumerate(frame_urls):
                await video_repo.insert_frame_analysis(FrameAnalysis(
                    video_id=video.id,
                    position=position,
                    frame_url=url,
                    description=f"Description of frame {position}",
                ))
        return video

    return _make


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_keys=API_KEY,
        anthropic_api_key="sk-test",
        snowflake_mock_mode=True,
        r2_mock_mode=True,
        video_processor_mock_mode=True,
        max_upload_size_mb=1,
    )


@pytest.fixture
def app(settings, video_repo, conversation_repo, storage, provider, processor):
    from framechat.main import create_app

    application = create_app()
    application.dependency_overrides.update({
        get_settings: lambda: settings,
        dependencies.get_video_repository: lambda: video_repo,
        dependencies.get_conversation_repository: lambda: conversation_repo,
        dependencies.get_storage_client: lambda: storage,
        dependencies.get_completion_provider: lambda: provider,
        dependencies.get_video_processor: lambda: processor,
    })
    yield application
    application.dependency_overrides.clear()
    dependencies.reset_shared_clients()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, headers={"X-API-Key": API_KEY, "X-User-Id": "user-1"})
