"""
Unit tests for the upload coordinator and the ingestion pipeline.

The invariant under test throughout: the stored frame list is always a
gap-free prefix of the produced frames, in position order, and equals
the full list once the video is processed.
"""

import asyncio
import logging
from uuid import uuid4

import pytest

from framechat.core.dispatcher import FrameAnalysisDispatcher
from framechat.core.errors import StoragePermissionError, StorageQuotaError, VideoRejectedError
from framechat.core.frames import ExtractedFrame, FrameExtractor
from framechat.core.ingestion import (
    FrameUrlSlots,
    IngestionPipeline,
    UploadCoordinator,
    frame_path,
    source_path,
)
from framechat.core.models import ERROR_DESCRIPTION, Video
from framechat.infrastructure.storage.client import MockStorageClient
from framechat.infrastructure.video.processor import MockVideoProcessor


def make_frames(count: int) -> list[ExtractedFrame]:
    return [
        ExtractedFrame(position=i, timestamp_seconds=float(i), image_data=b"jpeg")
        for i in range(count)
    ]


class RecordSnapshotStorage(MockStorageClient):
    """Remembers which Video records existed (and their urls) at each upload."""

    def __init__(self, video_repo) -> None:
        super().__init__()
        self._video_repo = video_repo
        self.snapshots: dict[str, dict] = {}

    async def upload_object(self, path, data, content_type):
        self.snapshots[path] = {vid: v.url for vid, v in self._video_repo.videos.items()}
        return await super().upload_object(path, data, content_type)


class ReversedLatencyStorage(MockStorageClient):
    """Lower positions finish last, so completion order inside a batch is reversed."""

    async def upload_object(self, path, data, content_type):
        if path.startswith("frames/"):
            position = int(path.rsplit("/", 1)[1].split("-")[0])
            await asyncio.sleep(0.01 * (10 - position % 10))
        await super().upload_object(path, data, content_type)


class RefusingStorage(MockStorageClient):
    """Refuses frames from a given position onwards."""

    def __init__(self, refuse_from: int, error=StoragePermissionError) -> None:
        super().__init__()
        self.refuse_from = refuse_from
        self.error = error

    async def upload_object(self, path, data, content_type):
        if path.startswith("frames/"):
            position = int(path.rsplit("/", 1)[1].split("-")[0])
            if position >= self.refuse_from:
                raise self.error(f"refused {path}")
        await super().upload_object(path, data, content_type)


def stored_video(video_repo, user_id="user-1") -> Video:
    video = Video(title="Clip", user_id=user_id)
    asyncio.run(video_repo.create_video(video))
    return video


# ---------------------------------------------------------------------------
# Paths and Slots
# ---------------------------------------------------------------------------

class TestPaths:
    def test_paths_are_deterministic(self):
        video_id = uuid4()
        frame = ExtractedFrame(position=7, timestamp_seconds=62.0, image_data=b"x")

        assert frame_path(video_id, frame) == f"frames/{video_id}/0007-62s.jpg"
        assert source_path(video_id, "video/quicktime") == f"videos/{video_id}/source.mov"


class TestFrameUrlSlots:
    def test_prefix_stops_at_first_gap(self):
        slots = FrameUrlSlots(4)
        slots.set(0, "a")
        slots.set(2, "c")

        assert slots.contiguous_prefix() == ["a"]
        assert slots.resolved_count == 2

    def test_earliest_resolved_position(self):
        slots = FrameUrlSlots(3)
        slots.set(2, "c")
        slots.set(1, "b")
        assert slots.earliest() == (1, "b")

    def test_out_of_range_position_rejected(self):
        with pytest.raises(IndexError):
            FrameUrlSlots(2).set(2, "x")


# ---------------------------------------------------------------------------
# Upload Coordinator Tests
# ---------------------------------------------------------------------------

class TestUploadCoordinator:
    """Tests for batched frame upload and checkpointing."""

    def test_frames_stay_in_position_order_when_uploads_finish_out_of_order(self, video_repo):
        video = stored_video(video_repo)
        storage = ReversedLatencyStorage()
        coordinator = UploadCoordinator(storage, video_repo, batch_size=5)

        urls = asyncio.run(coordinator.upload_frames(video.id, make_frames(7)))

        expected = [storage.public_url(frame_path(video.id, f)) for f in make_frames(7)]
        assert urls == expected
        assert video_repo.videos[video.id].frame_urls == expected

    def test_checkpoints_grow_by_batch(self, video_repo, storage):
        video = stored_video(video_repo)
        coordinator = UploadCoordinator(storage, video_repo, batch_size=2)

        asyncio.run(coordinator.upload_frames(video.id, make_frames(5)))

        checkpoints = [
            len(update.frame_urls)
            for _, update in video_repo.update_calls
            if update.frame_urls is not None
        ]
        assert checkpoints == [2, 4, 5]

    def test_last_batch_checkpoints_even_off_cycle(self, video_repo, storage):
        video = stored_video(video_repo)
        coordinator = UploadCoordinator(storage, video_repo, batch_size=2, checkpoint_every=2)

        asyncio.run(coordinator.upload_frames(video.id, make_frames(5)))

        checkpoints = [len(u.frame_urls) for _, u in video_repo.update_calls if u.frame_urls is not None]
        assert checkpoints == [4, 5]

    def test_thumbnail_is_first_frame_and_set_once(self, video_repo, storage):
        video = stored_video(video_repo)
        coordinator = UploadCoordinator(storage, video_repo, batch_size=2)

        urls = asyncio.run(coordinator.upload_frames(video.id, make_frames(4)))

        assert video_repo.videos[video.id].thumbnail_url == urls[0]

    def test_existing_thumbnail_is_kept(self, video_repo, storage):
        video = Video(title="Clip", user_id="user-1", thumbnail_url="custom.jpg")
        asyncio.run(video_repo.create_video(video))
        coordinator = UploadCoordinator(storage, video_repo)

        asyncio.run(coordinator.upload_frames(video.id, make_frames(2)))

        assert video_repo.videos[video.id].thumbnail_url == "custom.jpg"

    def test_already_uploaded_frame_counts_as_success(self, video_repo, storage):
        """A retried submission hits existing objects and still resolves every URL."""
        video = stored_video(video_repo)
        frames = make_frames(3)
        asyncio.run(storage.upload_object(frame_path(video.id, frames[1]), b"old", "image/jpeg"))
        coordinator = UploadCoordinator(storage, video_repo)

        urls = asyncio.run(coordinator.upload_frames(video.id, frames))

        assert len(urls) == 3
        assert storage.objects[frame_path(video.id, frames[1])] == b"old"

    def test_permission_error_aborts_and_keeps_clean_prefix(self, video_repo):
        video = stored_video(video_repo)
        coordinator = UploadCoordinator(RefusingStorage(refuse_from=6), video_repo, batch_size=5)

        with pytest.raises(StoragePermissionError):
            asyncio.run(coordinator.upload_frames(video.id, make_frames(10)))

        assert len(video_repo.videos[video.id].frame_urls) == 5

    def test_quota_error_is_fatal(self, video_repo):
        video = stored_video(video_repo)
        storage = RefusingStorage(refuse_from=0, error=StorageQuotaError)
        coordinator = UploadCoordinator(storage, video_repo)

        with pytest.raises(StorageQuotaError):
            asyncio.run(coordinator.upload_frames(video.id, make_frames(3)))
        assert video_repo.videos[video.id].frame_urls == []

    def test_finalize_corrects_short_list_then_marks_processed(self, video_repo, storage):
        video = stored_video(video_repo)
        coordinator = UploadCoordinator(storage, video_repo)

        result = asyncio.run(coordinator.finalize(video.id, ["a.jpg", "b.jpg"]))

        assert result.frame_urls == ["a.jpg", "b.jpg"]
        assert result.is_processed is True


# ---------------------------------------------------------------------------
# Ingestion Pipeline Tests
# ---------------------------------------------------------------------------

@pytest.fixture
def pipeline(video_repo, storage, provider):
    def _build(duration_seconds: float = 4.0, max_duration_seconds: float = 600.0, store=None):
        extractor = FrameExtractor(MockVideoProcessor(duration_seconds=duration_seconds))
        coordinator = UploadCoordinator(store if store is not None else storage, video_repo, batch_size=2)
        return IngestionPipeline(
            extractor=extractor,
            coordinator=coordinator,
            videos=video_repo,
            dispatcher_factory=lambda: FrameAnalysisDispatcher(provider, video_repo, batch_size=3),
            max_duration_seconds=max_duration_seconds,
        )

    return _build


class TestIngestionPipeline:
    """End-to-end ingestion against in-memory stand-ins."""

    def test_start_creates_record_with_source_and_no_frames(self, pipeline, user, video_repo):
        store = RecordSnapshotStorage(video_repo)
        pending = asyncio.run(pipeline(store=store).start(user, "Clip", b"video-bytes", "video/mp4"))

        stored = video_repo.videos[pending.video.id]
        path = source_path(stored.id, "video/mp4")
        # the record exists, without a url, before the source goes up
        assert store.snapshots[path] == {stored.id: ""}
        assert [(vid, u.url) for vid, u in video_repo.update_calls] == [(stored.id, store.public_url(path))]
        assert stored.url == store.public_url(path)
        assert pending.video.url == stored.url
        assert stored.frame_urls == []
        assert stored.is_processed is False
        assert stored.duration_seconds == 4.0
        assert len(pending.frames) == 4

    def test_too_long_video_is_rejected_before_anything_is_stored(self, pipeline, user, storage, video_repo):
        with pytest.raises(VideoRejectedError, match="too long"):
            asyncio.run(pipeline(duration_seconds=700.0).start(user, "Clip", b"v", "video/mp4"))

        assert storage.objects == {}
        assert video_repo.videos == {}

    def test_complete_uploads_describes_and_marks_processed(self, pipeline, user, video_repo, provider):
        ingestion = pipeline()

        async def run():
            pending = await ingestion.start(user, "Clip", b"video-bytes", "video/mp4")
            return await ingestion.complete(pending)

        video = asyncio.run(run())

        assert video.is_processed is True
        assert video.frame_count == 4
        assert video.thumbnail_url == video.frame_urls[0]
        analyses = asyncio.run(video_repo.list_frame_analyses(video.id))
        assert [a.position for a in analyses] == [0, 1, 2, 3]
        assert [a.frame_url for a in analyses] == video.frame_urls
        assert len(provider.describe_calls) == 4

    def test_model_failure_degrades_to_sentinel(self, pipeline, user, video_repo, provider, storage):
        ingestion = pipeline()

        async def run():
            pending = await ingestion.start(user, "Clip", b"video-bytes", "video/mp4")
            provider.failing_urls.add(storage.public_url(frame_path(pending.video.id, pending.frames[2])))
            return await ingestion.complete(pending)

        video = asyncio.run(run())

        assert video.is_processed is True
        analyses = asyncio.run(video_repo.list_frame_analyses(video.id))
        assert analyses[2].description == ERROR_DESCRIPTION
        assert sum(1 for a in analyses if a.is_error) == 1

    def test_background_failure_is_logged_not_raised(self, pipeline, user, video_repo, caplog):
        ingestion = pipeline()
        pending = asyncio.run(ingestion.start(user, "Clip", b"video-bytes", "video/mp4"))
        del video_repo.videos[pending.video.id]

        with caplog.at_level(logging.ERROR):
            asyncio.run(ingestion.complete_in_background(pending))

        assert "Background ingestion failed" in caplog.text
