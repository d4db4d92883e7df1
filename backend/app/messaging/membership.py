"""User and group-membership lookups used as authorization gates."""
import logging
from typing import List

from .database import Database
from .schemas import GroupMember, MemberRole

logger = logging.getLogger(__name__)


class MembershipOracle:
    """Point lookups against the users and group_members tables.

    Every call checks out its own pooled connection. Store failures
    propagate as ``StoreUnavailable``.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def user_exists(self, user_id: int) -> bool:
        async with self._db.acquire() as conn:
            row = await conn.fetchone("SELECT 1 AS found FROM users WHERE id = ?", [user_id])
        return row is not None

    async def is_group_member(self, group_id: int, user_id: int) -> bool:
        async with self._db.acquire() as conn:
            row = await conn.fetchone(
                "SELECT 1 AS found FROM group_members WHERE group_id = ? AND user_id = ?",
                [group_id, user_id],
            )
        return row is not None

    async def list_groups_for_user(self, user_id: int) -> List[int]:
        """Group ids the user belongs to, used once per connection."""
        async with self._db.acquire() as conn:
            rows = await conn.fetchall(
                "SELECT group_id FROM group_members WHERE user_id = ? ORDER BY group_id",
                [user_id],
            )
        return [row["group_id"] for row in rows]

    async def list_group_members(self, group_id: int) -> List[GroupMember]:
        """Members of a group with their role, earliest joiner first."""
        async with self._db.acquire() as conn:
            rows = await conn.fetchall(
                """
                SELECT gm.user_id AS id, u.username, u.avatar_url, gm.role, gm.joined_at
                FROM group_members gm
                JOIN users u ON gm.user_id = u.id
                WHERE gm.group_id = ?
                ORDER BY gm.joined_at ASC, gm.user_id ASC
                """,
                [group_id],
            )
        return [
            GroupMember(
                id=row["id"],
                username=row["username"],
                avatarUrl=row["avatar_url"],
                role=MemberRole(row["role"]),
                joinedAt=row["joined_at"],
            )
            for row in rows
        ]
