"""
Snowflake repository for videos and frame analyses.

This module implements the repository pattern for video data access.
The repository:
1. Translates between domain models and database rows
2. Encapsulates all SQL queries
3. Exposes async methods; the SQL runs in a worker thread

frame_urls is stored as a VARIANT (JSON array). Snowflake doesn't allow
PARSE_JSON inside a VALUES clause, so inserts use INSERT ... SELECT.
"""

import json
import logging
from typing import Optional
from uuid import UUID

from ....core.errors import VideoNotFoundError
from ....core.models import FrameAnalysis, Video, VideoUpdate, utcnow
from ..client import SnowflakeDatabase

logger = logging.getLogger(__name__)


VIDEO_COLUMNS = """
    video_id, user_id, title, description, url, thumbnail_url,
    frame_urls, duration_seconds, is_processed, is_removed, created_at
"""

ANALYSIS_COLUMNS = """
    analysis_id, video_id, position, frame_url, description,
    created_at, updated_at
"""


def _parse_frame_urls(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = json.loads(value)
    return list(value)


def _row_to_video(row) -> Video:
    return Video(
        id=UUID(row[0]),
        user_id=row[1],
        title=row[2],
        description=row[3],
        url=row[4] or "",
        thumbnail_url=row[5],
        frame_urls=_parse_frame_urls(row[6]),
        duration_seconds=row[7],
        is_processed=bool(row[8]),
        is_removed=bool(row[9]),
        created_at=row[10],
    )


def _row_to_analysis(row) -> FrameAnalysis:
    return FrameAnalysis(
        id=UUID(row[0]),
        video_id=UUID(row[1]),
        position=row[2],
        frame_url=row[3],
        description=row[4],
        created_at=row[5],
        updated_at=row[6],
    )


class SnowflakeVideoRepository:
    """
    Repository for videos and their frame analyses.

    Each public method is one transaction. Frame analyses are insert-only
    and keyed by (video_id, position, frame_url); the insert is a MERGE
    so concurrent dispatches of the same frame still produce one row.
    """

    def __init__(self, database: SnowflakeDatabase) -> None:
        self._db = database

    # -----------------------------------------------------------------------
    # Videos
    # -----------------------------------------------------------------------

    async def create_video(self, video: Video) -> Video:
        def work(cursor) -> None:
            cursor.execute(f"""
                INSERT INTO videos ({VIDEO_COLUMNS})
                SELECT %s, %s, %s, %s, %s, %s, PARSE_JSON(%s), %s, %s, %s, %s
            """, (
                str(video.id), video.user_id, video.title, video.description,
                video.url, video.thumbnail_url, json.dumps(video.frame_urls),
                video.duration_seconds, video.is_processed, video.is_removed,
                video.created_at,
            ))

        await self._db.run(work)

        logger.debug("Inserted video", extra={"video_id": str(video.id)})
        return video

    async def get_video(self, video_id: UUID) -> Optional[Video]:
        def work(cursor):
            cursor.execute(f"""
                SELECT {VIDEO_COLUMNS}
                FROM videos
                WHERE video_id = %s
            """, (str(video_id),))
            return cursor.fetchone()

        row = await self._db.run(work)
        return _row_to_video(row) if row else None

    async def list_videos(self, user_id: str, include_removed: bool = False) -> list[Video]:
        removed_filter = "" if include_removed else "AND is_removed = FALSE"

        def work(cursor):
            cursor.execute(f"""
                SELECT {VIDEO_COLUMNS}
                FROM videos
                WHERE user_id = %s
                {removed_filter}
                ORDER BY created_at DESC
            """, (user_id,))
            return cursor.fetchall()

        rows = await self._db.run(work)
        return [_row_to_video(row) for row in rows]

    async def update_video(self, video_id: UUID, update: VideoUpdate) -> Video:
        """Partial update. Only fields set on `update` are written."""
        assignments = []
        params: list = []

        for column, value in (
            ("title", update.title),
            ("description", update.description),
            ("thumbnail_url", update.thumbnail_url),
            ("is_processed", update.is_processed),
            ("is_removed", update.is_removed),
            ("url", update.url),
        ):
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)

        if update.frame_urls is not None:
            assignments.append("frame_urls = PARSE_JSON(%s)")
            params.append(json.dumps(update.frame_urls))

        def work(cursor):
            if assignments:
                cursor.execute(f"""
                    UPDATE videos
                    SET {", ".join(assignments)}
                    WHERE video_id = %s
                """, (*params, str(video_id)))
            cursor.execute(f"""
                SELECT {VIDEO_COLUMNS}
                FROM videos
                WHERE video_id = %s
            """, (str(video_id),))
            return cursor.fetchone()

        row = await self._db.run(work)
        if not row:
            raise VideoNotFoundError(f"Video {video_id} not found")
        return _row_to_video(row)

    async def set_thumbnail_if_unset(self, video_id: UUID, thumbnail_url: str) -> bool:
        def work(cursor) -> int:
            cursor.execute("""
                UPDATE videos
                SET thumbnail_url = %s
                WHERE video_id = %s AND thumbnail_url IS NULL
            """, (thumbnail_url, str(video_id)))
            return cursor.rowcount

        return (await self._db.run(work)) == 1

    async def delete_video(self, video_id: UUID) -> None:
        def work(cursor) -> None:
            cursor.execute("DELETE FROM frame_analyses WHERE video_id = %s", (str(video_id),))
            cursor.execute("DELETE FROM videos WHERE video_id = %s", (str(video_id),))

        await self._db.run(work)
        logger.info("Deleted video rows", extra={"video_id": str(video_id)})

    # -----------------------------------------------------------------------
    # Frame analyses
    # -----------------------------------------------------------------------

    async def find_frame_analysis(
        self,
        video_id: UUID,
        position: int,
        frame_url: str,
    ) -> Optional[FrameAnalysis]:
        def work(cursor):
            cursor.execute(f"""
                SELECT {ANALYSIS_COLUMNS}
                FROM frame_analyses
                WHERE video_id = %s AND position = %s AND frame_url = %s
            """, (str(video_id), position, frame_url))
            return cursor.fetchone()

        row = await self._db.run(work)
        return _row_to_analysis(row) if row else None

    async def insert_frame_analysis(self, analysis: FrameAnalysis) -> FrameAnalysis:
        now = utcnow()

        def work(cursor):
            cursor.execute("""
                MERGE INTO frame_analyses AS target
                USING (SELECT %s AS video_id, %s AS position, %s AS frame_url) AS source
                ON target.video_id = source.video_id
                   AND target.position = source.position
                   AND target.frame_url = source.frame_url
                WHEN NOT MATCHED THEN INSERT (
                    analysis_id, video_id, position, frame_url, description,
                    created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, (
                str(analysis.video_id), analysis.position, analysis.frame_url,
                str(analysis.id), str(analysis.video_id), analysis.position,
                analysis.frame_url, analysis.description, now, now,
            ))
            inserted = cursor.rowcount
            cursor.execute(f"""
                SELECT {ANALYSIS_COLUMNS}
                FROM frame_analyses
                WHERE video_id = %s AND position = %s AND frame_url = %s
            """, (str(analysis.video_id), analysis.position, analysis.frame_url))
            return inserted, cursor.fetchone()

        inserted, row = await self._db.run(work)

        if not inserted:
            logger.debug(
                "Frame analysis already stored",
                extra={"video_id": str(analysis.video_id), "position": analysis.position}
            )
        return _row_to_analysis(row)

    async def list_frame_analyses(self, video_id: UUID) -> list[FrameAnalysis]:
        def work(cursor):
            cursor.execute(f"""
                SELECT {ANALYSIS_COLUMNS}
                FROM frame_analyses
                WHERE video_id = %s
                ORDER BY position ASC, created_at ASC
            """, (str(video_id),))
            return cursor.fetchall()

        rows = await self._db.run(work)
        return [_row_to_analysis(row) for row in rows]
