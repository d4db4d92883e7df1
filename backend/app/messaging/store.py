"""Message persistence: send, edit, delete and history queries.

All writes are single statements guarded in SQL, so no application-level
locking is needed:

    * ``send`` runs every validation first; the INSERT is the only
      mutating statement, so a failed validation leaves nothing behind.
    * ``update`` / ``delete`` filter on ``id = ? AND sender_id = ?`` and use
      RETURNING; zero rows means "not found or not yours". Two concurrent
      deletes of the same message therefore see exactly one success.

Every returned message is normalized with the sender's current username
and avatar (see ``Message``).
"""
import logging
from typing import Any, Dict, List, Optional

from .database import Database, PooledConnection, Row, utcnow
from .errors import (
    MESSAGE_NOT_OWNED,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from .schemas import DirectThread, GroupSummary, MemberRole, Message

logger = logging.getLogger(__name__)

_MESSAGE_WITH_SENDER = """
    SELECT m.id, m.sender_id, m.recipient_id, m.group_id, m.content,
           m.created_at, m.updated_at,
           u.username AS sender_username, u.avatar_url AS sender_avatar_url
    FROM messages m
    LEFT JOIN users u ON u.id = m.sender_id
"""


def normalize_message(row: Row, sender: Optional[Dict[str, Any]] = None) -> Message:
    """Build the wire view of a message row.

    Args:
        row: A messages row, optionally already joined with sender columns.
        sender: Separate users row for the sender (used after RETURNING,
            which cannot join).
    """
    sender = sender or {}
    username = row.get("sender_username") or sender.get("username")
    avatar = row.get("sender_avatar_url") or sender.get("avatar_url")
    return Message(
        id=row["id"],
        senderId=row["sender_id"],
        recipientId=row["recipient_id"],
        groupId=row["group_id"],
        content=row["content"],
        createdAt=row["created_at"],
        updatedAt=row.get("updated_at"),
        senderDisplayName=username or "Unknown",
        senderAvatar=avatar,
    )


def clean_content(content: Optional[str]) -> str:
    """Trim message text, rejecting empty or whitespace-only content."""
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message content cannot be empty")
    return text


class MessageStore:
    """Persists direct and group messages in DuckDB."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # =========================================================================
    # Mutations
    # =========================================================================

    async def send(
        self,
        sender_id: int,
        *,
        recipient_id: Optional[int] = None,
        group_id: Optional[int] = None,
        content: Optional[str],
    ) -> Message:
        """Persist a new message and return its normalized view.

        Raises:
            ValidationError: Empty content, no target, both targets, or a
                direct message addressed to the sender.
            NotFoundError: The direct-message recipient does not exist.
            AuthorizationError: The sender is not a member of the group.
            StoreUnavailable: The database could not be reached.
        """
        text = clean_content(content)
        if (recipient_id is None) == (group_id is None):
            raise ValidationError("Exactly one of recipient or group is required")
        if recipient_id is not None and recipient_id == sender_id:
            raise ValidationError("Cannot send message to self")

        async with self._db.acquire() as conn:
            if recipient_id is not None:
                found = await conn.fetchone("SELECT 1 AS found FROM users WHERE id = ?", [recipient_id])
                if found is None:
                    raise NotFoundError("Recipient does not exist")
            else:
                member = await conn.fetchone(
                    "SELECT 1 AS found FROM group_members WHERE group_id = ? AND user_id = ?",
                    [group_id, sender_id],
                )
                if member is None:
                    raise AuthorizationError("Group does not exist or user is not a member")

            row = await conn.fetchone(
                """
                INSERT INTO messages (sender_id, recipient_id, group_id, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                RETURNING *
                """,
                [sender_id, recipient_id, group_id, text, utcnow()],
            )
            sender = await self._sender(conn, sender_id)

        message = normalize_message(row, sender)
        logger.info(
            f"[Store] Message {message.id} from {sender_id} to "
            f"{'user ' + str(recipient_id) if recipient_id is not None else 'group ' + str(group_id)}"
        )
        return message

    async def update(self, message_id: int, user_id: int, content: Optional[str]) -> Message:
        """Replace a message's content. Only the original sender may edit.

        Raises:
            ValidationError: Empty content.
            NotFoundError: Message absent or not sent by ``user_id``.
        """
        text = clean_content(content)
        async with self._db.acquire() as conn:
            row = await conn.fetchone(
                """
                UPDATE messages
                SET content = ?, updated_at = ?
                WHERE id = ? AND sender_id = ?
                RETURNING *
                """,
                [text, utcnow(), message_id, user_id],
            )
            if row is None:
                raise NotFoundError(MESSAGE_NOT_OWNED)
            sender = await self._sender(conn, user_id)

        logger.info(f"[Store] Message {message_id} edited by {user_id}")
        return normalize_message(row, sender)

    async def delete(self, message_id: int, user_id: int) -> Message:
        """Hard-delete a message and return what was removed.

        The returned record tells the caller which room to notify.

        Raises:
            NotFoundError: Message absent or not sent by ``user_id``.
        """
        async with self._db.acquire() as conn:
            row = await conn.fetchone(
                "DELETE FROM messages WHERE id = ? AND sender_id = ? RETURNING *",
                [message_id, user_id],
            )
            if row is None:
                raise NotFoundError(MESSAGE_NOT_OWNED)
            sender = await self._sender(conn, user_id)

        logger.info(f"[Store] Message {message_id} deleted by {user_id}")
        return normalize_message(row, sender)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, message_id: int) -> Message:
        async with self._db.acquire() as conn:
            row = await conn.fetchone(_MESSAGE_WITH_SENDER + " WHERE m.id = ?", [message_id])
        if row is None:
            raise NotFoundError("Message not found")
        return normalize_message(row)

    async def direct_conversation(self, user_id: int, other_user_id: int) -> List[Message]:
        """Every direct message between two users, oldest first."""
        async with self._db.acquire() as conn:
            rows = await conn.fetchall(
                _MESSAGE_WITH_SENDER
                + """
                WHERE ((m.sender_id = ? AND m.recipient_id = ?)
                    OR (m.sender_id = ? AND m.recipient_id = ?))
                  AND m.group_id IS NULL
                ORDER BY m.created_at ASC, m.id ASC
                """,
                [user_id, other_user_id, other_user_id, user_id],
            )
        return [normalize_message(row) for row in rows]

    async def group_history(self, group_id: int, user_id: int) -> List[Message]:
        """Every message in a group, oldest first. Members only.

        Raises:
            AuthorizationError: ``user_id`` is not a member of the group.
        """
        async with self._db.acquire() as conn:
            member = await conn.fetchone(
                "SELECT 1 AS found FROM group_members WHERE group_id = ? AND user_id = ?",
                [group_id, user_id],
            )
            if member is None:
                raise AuthorizationError("You are not a member of this group")
            rows = await conn.fetchall(
                _MESSAGE_WITH_SENDER + " WHERE m.group_id = ? ORDER BY m.created_at ASC, m.id ASC",
                [group_id],
            )
        return [normalize_message(row) for row in rows]

    async def direct_threads(self, user_id: int) -> List[DirectThread]:
        """One entry per direct-message partner, most recent first."""
        async with self._db.acquire() as conn:
            rows = await conn.fetchall(
                """
                WITH ranked AS (
                    SELECT
                        CASE WHEN m.sender_id = ? THEN m.recipient_id ELSE m.sender_id END
                            AS other_user_id,
                        m.id,
                        m.content,
                        m.created_at,
                        ROW_NUMBER() OVER (
                            PARTITION BY CASE WHEN m.sender_id = ? THEN m.recipient_id ELSE m.sender_id END
                            ORDER BY m.created_at DESC, m.id DESC
                        ) AS rn
                    FROM messages m
                    WHERE (m.sender_id = ? OR m.recipient_id = ?)
                      AND m.group_id IS NULL
                )
                SELECT u.id AS other_user_id, u.username, u.avatar_url,
                       r.content AS last_message, r.created_at AS last_message_at
                FROM ranked r
                JOIN users u ON u.id = r.other_user_id
                WHERE r.rn = 1
                ORDER BY r.created_at DESC, r.id DESC
                """,
                [user_id, user_id, user_id, user_id],
            )
        return [
            DirectThread(
                otherUserId=row["other_user_id"],
                username=row["username"],
                avatarUrl=row["avatar_url"],
                lastMessage=row["last_message"],
                lastMessageAt=row["last_message_at"],
            )
            for row in rows
        ]

    async def thread_exists(self, user_id: int, other_user_id: int) -> bool:
        async with self._db.acquire() as conn:
            row = await conn.fetchone(
                """
                SELECT 1 AS found FROM messages
                WHERE ((sender_id = ? AND recipient_id = ?) OR (sender_id = ? AND recipient_id = ?))
                  AND group_id IS NULL
                LIMIT 1
                """,
                [user_id, other_user_id, other_user_id, user_id],
            )
        return row is not None

    async def list_groups(self, user_id: int) -> List[GroupSummary]:
        async with self._db.acquire() as conn:
            rows = await conn.fetchall(
                """
                SELECT g.id, g.name, g.avatar_url, gm.role
                FROM chat_groups g
                JOIN group_members gm ON g.id = gm.group_id
                WHERE gm.user_id = ?
                ORDER BY g.id
                """,
                [user_id],
            )
        return [
            GroupSummary(
                id=row["id"],
                name=row["name"],
                avatarUrl=row["avatar_url"],
                role=MemberRole(row["role"]),
            )
            for row in rows
        ]

    @staticmethod
    async def _sender(conn: PooledConnection, user_id: int) -> Optional[Row]:
        return await conn.fetchone("SELECT username, avatar_url FROM users WHERE id = ?", [user_id])
