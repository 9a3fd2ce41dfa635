"""
Domain models for video question answering.

These models represent the core business concepts. They have no dependencies
on external frameworks, databases, or APIs. The repositories translate them
to and from table rows; the API layer translates them to JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4


# Stored in place of a description when the vision model fails on a frame.
# It is a terminal analysis: the frame is not retried.
ERROR_DESCRIPTION = "[Error processing frame]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(Enum):
    """Who wrote a chat message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuthenticatedUser:
    """
    Identity handed to us by the session layer in front of the API.

    We trust it for ownership checks and never re-derive it.
    """
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False

    def __post_init__(self) -> None:
        if not self.id.strip():
            raise ValueError("User id cannot be empty")


def validate_frame_urls(frame_urls: list[str]) -> None:
    """
    frame_urls[i] is the frame sampled at position i, so a hole would
    shift every later frame. Reject anything that isn't a real URL.
    """
    for position, url in enumerate(frame_urls):
        if not isinstance(url, str) or not url.strip():
            raise ValueError(f"Frame URL at position {position} is empty")


@dataclass
class Video:
    """
    An uploaded video and the frames sampled from it.

    Created with an empty frame list before any frame upload starts,
    then filled in by the upload coordinator as batches land.
    """
    title: str
    user_id: str
    url: str = ""
    id: UUID = field(default_factory=uuid4)
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    frame_urls: list[str] = field(default_factory=list)
    duration_seconds: Optional[float] = None
    is_processed: bool = False
    is_removed: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.title.strip():
            raise ValueError("Video title cannot be empty")
        validate_frame_urls(self.frame_urls)

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    @property
    def frame_count(self) -> int:
        return len(self.frame_urls)


@dataclass
class VideoUpdate:
    """
    A partial update to a Video.

    None means "leave unchanged". Ownership, url and created_at are
    not updatable through this path; url is set once, by the ingestion
    pipeline, right after the source upload.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    frame_urls: Optional[list[str]] = None
    is_processed: Optional[bool] = None
    is_removed: Optional[bool] = None
    url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.title is not None and not self.title.strip():
            raise ValueError("Video title cannot be empty")
        if self.frame_urls is not None:
            validate_frame_urls(self.frame_urls)

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.title,
                self.description,
                self.thumbnail_url,
                self.frame_urls,
                self.is_processed,
                self.is_removed,
                self.url,
            )
        )

    def apply_to(self, video: Video) -> Video:
        """Apply this update in place and return the video."""
        if self.title is not None:
            video.title = self.title
        if self.description is not None:
            video.description = self.description
        if self.thumbnail_url is not None:
            video.thumbnail_url = self.thumbnail_url
        if self.frame_urls is not None:
            video.frame_urls = list(self.frame_urls)
        if self.is_processed is not None:
            video.is_processed = self.is_processed
        if self.is_removed is not None:
            video.is_removed = self.is_removed
        if self.url is not None:
            video.url = self.url
        return video


@dataclass
class FrameAnalysis:
    """
    What the vision model saw in one frame.

    Logically keyed by (video_id, position, frame_url). Immutable once
    written; an error result is stored as ERROR_DESCRIPTION.
    """
    video_id: UUID
    position: int
    frame_url: str
    description: str
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.position < 0:
            raise ValueError("Frame position cannot be negative")
        if not self.frame_url.strip():
            raise ValueError("Frame URL cannot be empty")

    @property
    def is_error(self) -> bool:
        return self.description == ERROR_DESCRIPTION

    @property
    def key(self) -> tuple[UUID, int, str]:
        return (self.video_id, self.position, self.frame_url)


@dataclass
class Conversation:
    """The single chat thread a user has about a video."""
    video_id: UUID
    user_id: str
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    """A single message in a conversation. Append-only."""
    conversation_id: UUID
    role: MessageRole
    content: str
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)

    def to_prompt(self) -> dict[str, str]:
        """Role-tagged form used when building model prompts."""
        return {"role": self.role.value, "content": self.content}
