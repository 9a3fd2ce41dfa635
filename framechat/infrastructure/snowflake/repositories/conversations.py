"""
Snowflake repository for conversations and messages.

Messages are append-only. Ordering comes from the sequence_number
AUTOINCREMENT column rather than created_at, so two messages written in
the same millisecond still come back in insertion order.
"""

import logging
from typing import Optional
from uuid import UUID

from ....core.models import Conversation, Message, MessageRole
from ..client import SnowflakeDatabase

logger = logging.getLogger(__name__)


MESSAGE_COLUMNS = "message_id, conversation_id, role, content, created_at"


def _row_to_message(row) -> Message:
    return Message(
        id=UUID(row[0]),
        conversation_id=UUID(row[1]),
        role=MessageRole(row[2]),
        content=row[3],
        created_at=row[4],
    )


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=UUID(row[0]),
        video_id=UUID(row[1]),
        user_id=row[2],
        created_at=row[3],
    )


class SnowflakeConversationRepository:
    """Repository for the per-(video, user) chat thread."""

    def __init__(self, database: SnowflakeDatabase) -> None:
        self._db = database

    async def get_conversation(self, video_id: UUID, user_id: str) -> Optional[Conversation]:
        def work(cursor):
            cursor.execute("""
                SELECT conversation_id, video_id, user_id, created_at
                FROM conversations
                WHERE video_id = %s AND user_id = %s
            """, (str(video_id), user_id))
            return cursor.fetchone()

        row = await self._db.run(work)
        return _row_to_conversation(row) if row else None

    async def get_or_create_conversation(self, video_id: UUID, user_id: str) -> Conversation:
        """
        Find the conversation, creating it if needed.

        MERGE keeps this to one row per (video, user) even when two
        requests race.
        """
        candidate = Conversation(video_id=video_id, user_id=user_id)

        def work(cursor):
            cursor.execute("""
                MERGE INTO conversations AS target
                USING (SELECT %s AS video_id, %s AS user_id) AS source
                ON target.video_id = source.video_id AND target.user_id = source.user_id
                WHEN NOT MATCHED THEN INSERT (
                    conversation_id, video_id, user_id, created_at
                ) VALUES (%s, %s, %s, %s)
            """, (
                str(video_id), user_id,
                str(candidate.id), str(video_id), user_id, candidate.created_at,
            ))
            cursor.execute("""
                SELECT conversation_id, video_id, user_id, created_at
                FROM conversations
                WHERE video_id = %s AND user_id = %s
            """, (str(video_id), user_id))
            return cursor.fetchone()

        row = await self._db.run(work)
        return _row_to_conversation(row)

    async def add_message(self, message: Message) -> Message:
        def work(cursor) -> None:
            cursor.execute("""
                INSERT INTO messages (message_id, conversation_id, role, content, created_at)
                VALUES (%s, %s, %s, %s, %s)
            """, (
                str(message.id), str(message.conversation_id),
                message.role.value, message.content, message.created_at,
            ))

        await self._db.run(work)

        logger.debug(
            "Stored message",
            extra={"conversation_id": str(message.conversation_id), "role": message.role.value}
        )
        return message

    async def recent_messages(
        self,
        conversation_id: UUID,
        limit: int,
        exclude_id: Optional[UUID] = None,
    ) -> list[Message]:
        """Newest `limit` messages, returned oldest first."""
        exclude_filter = "AND message_id != %s" if exclude_id else ""
        params: tuple = (str(conversation_id),)
        if exclude_id:
            params += (str(exclude_id),)
        params += (limit,)

        def work(cursor):
            cursor.execute(f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages
                WHERE conversation_id = %s
                {exclude_filter}
                ORDER BY sequence_number DESC
                LIMIT %s
            """, params)
            return cursor.fetchall()

        rows = await self._db.run(work)
        return [_row_to_message(row) for row in reversed(rows)]

    async def list_messages(self, conversation_id: UUID) -> list[Message]:
        def work(cursor):
            cursor.execute(f"""
                SELECT {MESSAGE_COLUMNS}
                FROM messages
                WHERE conversation_id = %s
                ORDER BY sequence_number ASC
            """, (str(conversation_id),))
            return cursor.fetchall()

        rows = await self._db.run(work)
        return [_row_to_message(row) for row in rows]

    async def delete_for_video(self, video_id: UUID) -> int:
        def work(cursor) -> int:
            cursor.execute("""
                DELETE FROM messages
                WHERE conversation_id IN (
                    SELECT conversation_id FROM conversations WHERE video_id = %s
                )
            """, (str(video_id),))
            cursor.execute("DELETE FROM conversations WHERE video_id = %s", (str(video_id),))
            return cursor.rowcount

        deleted = await self._db.run(work)
        logger.info(
            "Deleted conversations for video",
            extra={"video_id": str(video_id), "conversations": deleted}
        )
        return deleted
