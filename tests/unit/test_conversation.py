"""
Tests for chat context building.

The prompt is the contract with the model, so these tests pin its
shape: one system message with the frame block, history oldest first,
then the question.
"""

import asyncio
from uuid import uuid4

import pytest

from framechat.core.conversation import (
    ConversationContextBuilder,
    TextGroundedStrategy,
    VisionGroundedStrategy,
    format_frame_descriptions,
    select_evenly_spaced,
)
from framechat.core.errors import ChatNotReadyError, OperationTimeoutError, VideoNotFoundError
from framechat.core.models import FrameAnalysis, Message, MessageRole
from framechat.core.videos import VideoLibrary
from framechat.infrastructure.snowflake.repositories.mock import InMemoryConversationRepository


@pytest.fixture
def builder(video_repo, conversation_repo, storage):
    def _build(
        strategy=None,
        history_limit: int = 10,
        conversations=None,
        database_timeout: float = 30.0,
    ) -> ConversationContextBuilder:
        if conversations is None:
            conversations = conversation_repo
        library = VideoLibrary(video_repo, conversations, storage, database_timeout=database_timeout)
        return ConversationContextBuilder(
            library=library,
            conversations=conversations,
            strategy=strategy or TextGroundedStrategy(video_repo),
            history_limit=history_limit,
            database_timeout=database_timeout,
        )

    return _build



class HangingConversationRepository(InMemoryConversationRepository):
    """A store that never answers conversation lookups."""

    async def get_or_create_conversation(self, video_id, user_id):
        await asyncio.sleep(3600)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestFormatFrameDescriptions:
    def test_lines_are_one_based_and_position_ordered(self):
        video_id = uuid4()
        analyses = [
            FrameAnalysis(video_id=video_id, position=2, frame_url="c", description="third"),
            FrameAnalysis(video_id=video_id, position=0, frame_url="a", description="first\n  frame"),
            FrameAnalysis(video_id=video_id, position=1, frame_url="b", description="second"),
        ]

        assert format_frame_descriptions(analyses) == (
            "Frame 1: first frame\n"
            "Frame 2: second\n"
            "Frame 3: third"
        )


class TestSelectEvenlySpaced:
    def test_short_list_returned_whole(self):
        assert select_evenly_spaced(["a", "b"], 6) == ["a", "b"]

    def test_spread_includes_first_and_last(self):
        urls = [str(i) for i in range(20)]
        picked = select_evenly_spaced(urls, 6)

        assert len(picked) == 6
        assert picked[0] == "0"
        assert picked[-1] == "19"
        assert picked == sorted(picked, key=int)

    def test_single_pick_is_first_frame(self):
        assert select_evenly_spaced(["a", "b", "c"], 1) == ["a"]


# ---------------------------------------------------------------------------
# Builder Tests
# ---------------------------------------------------------------------------

class TestTextGroundedContext:
    """Default strategy: answer from stored descriptions."""

    def test_prompt_shape(self, builder, make_video, user):
        video = asyncio.run(make_video(description="A walk through the kitchen"))

        turn = asyncio.run(builder().prepare(user, video.id, "What is on the table?"))

        system, question = turn.prompt[0], turn.prompt[-1]
        assert len(turn.prompt) == 2
        assert system["role"] == "system"
        assert '"Kitchen tour"' in system["content"]
        assert "A walk through the kitchen" in system["content"]
        assert "Frame 1: Description of frame 0\nFrame 2: Description of frame 1" in system["content"]
        assert question == {"role": "user", "content": "What is on the table?"}

    def test_question_is_stored_before_model_call(self, builder, make_video, user, conversation_repo):
        video = asyncio.run(make_video())

        turn = asyncio.run(builder().prepare(user, video.id, "  Where is the cat?  "))

        assert [m.content for m in conversation_repo.messages] == ["Where is the cat?"]
        assert turn.user_message.role == MessageRole.USER

    def test_history_is_capped_and_excludes_current_question(self, builder, make_video, user, conversation_repo):
        video = asyncio.run(make_video())

        async def seed_and_prepare():
            conversation = await conversation_repo.get_or_create_conversation(video.id, user.id)
            for i in range(12):
                role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
                await conversation_repo.add_message(
                    Message(conversation_id=conversation.id, role=role, content=f"m{i}")
                )
            return await builder(history_limit=10).prepare(user, video.id, "latest?")

        turn = asyncio.run(seed_and_prepare())

        history = turn.prompt[1:-1]
        assert [m["content"] for m in history] == [f"m{i}" for i in range(2, 12)]
        assert turn.prompt[-1]["content"] == "latest?"

    def test_retry_reuses_unanswered_question(self, builder, make_video, user, conversation_repo):
        video = asyncio.run(make_video())

        async def ask_twice():
            first = await builder().prepare(user, video.id, "Why?")
            second = await builder().prepare(user, video.id, "Why?")
            return first, second

        first, second = asyncio.run(ask_twice())

        assert first.user_message.id == second.user_message.id
        assert len(conversation_repo.messages) == 1
        assert second.prompt[1:-1] == []

    def test_client_history_replaces_stored_history(self, builder, make_video, user, conversation_repo):
        video = asyncio.run(make_video())
        client_history = [
            {"role": "user", "content": "earlier"},
            {"role": "assistant", "content": "answer"},
            {"role": "system", "content": "ignored"},
            {"role": "assistant", "content": ""},
        ]

        turn = asyncio.run(builder().prepare(user, video.id, "now?", client_history=client_history))

        assert turn.prompt[1:-1] == [
            {"role": "user", "content": "earlier"},
            {"role": "assistant", "content": "answer"},
        ]
        assert turn.prompt[-1] == {"role": "user", "content": "now?"}
        assert [m.content for m in conversation_repo.messages] == ["now?"]

    def test_no_analyses_means_not_ready(self, builder, make_video, user):
        video = asyncio.run(make_video(analyzed=False))

        with pytest.raises(ChatNotReadyError):
            asyncio.run(builder().prepare(user, video.id, "Anything?"))

    def test_foreign_video_looks_missing(self, builder, make_video, other_user):
        video = asyncio.run(make_video())

        with pytest.raises(VideoNotFoundError):
            asyncio.run(builder().prepare(other_user, video.id, "Hello?"))

    def test_blank_question_rejected(self, builder, make_video, user):
        video = asyncio.run(make_video())
        with pytest.raises(ValueError):
            asyncio.run(builder().prepare(user, video.id, "   "))


class TestVisionGroundedContext:
    """Alternate strategy: send a few frames with the question."""

    def test_question_carries_evenly_spaced_images(self, builder, make_video, user):
        video = asyncio.run(make_video(frame_count=20, analyzed=False))

        turn = asyncio.run(builder(VisionGroundedStrategy(max_frames=6)).prepare(user, video.id, "What happens?"))

        content = turn.prompt[-1]["content"]
        assert content[0] == {"type": "text", "text": "What happens?"}
        images = [part["image_url"]["url"] for part in content[1:]]
        assert len(images) == 6
        assert images[0] == video.frame_urls[0]
        assert images[-1] == video.frame_urls[-1]

    def test_no_frames_means_not_ready(self, builder, make_video, user):
        video = asyncio.run(make_video(frame_count=0, analyzed=False))

        with pytest.raises(ChatNotReadyError):
            asyncio.run(builder(VisionGroundedStrategy()).prepare(user, video.id, "What happens?"))


class TestDatabaseTimeouts:
    """A stalled store fails the request instead of hanging it."""

    def test_hanging_conversation_store_times_out(self, builder, make_video, user):
        video = asyncio.run(make_video())
        hanging = HangingConversationRepository()

        with pytest.raises(OperationTimeoutError, match="get or create conversation"):
            asyncio.run(
                builder(conversations=hanging, database_timeout=0.01).prepare(user, video.id, "Still there?")
            )

        assert hanging.messages == []
