"""Group creation.

Membership rows written here are read-only for the rest of the messaging
core, which only uses them to gate room joins and group sends.
"""
import logging
from typing import List

from .database import Database, utcnow
from .errors import ValidationError
from .schemas import Group, MemberRole

logger = logging.getLogger(__name__)


class GroupDirectory:
    """Creates groups together with their initial membership."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_group(self, creator_id: int, name: str, member_ids: List[int]) -> Group:
        """Create a group owned by ``creator_id``.

        The creator becomes ``admin``; everyone in ``member_ids`` becomes a
        ``member``. All rows are written in one transaction.

        Raises:
            ValidationError: Blank name, no members, creator listed as a
                member, or an unknown member id.
        """
        group_name = (name or "").strip()
        if not group_name:
            raise ValidationError("Group name is required")
        unique_members = list(dict.fromkeys(member_ids))
        if not unique_members:
            raise ValidationError("At least one member is required")
        if creator_id in unique_members:
            raise ValidationError("Cannot add yourself as a member (creator is automatically included)")

        placeholders = ", ".join("?" for _ in unique_members)
        async with self._db.acquire() as conn:
            valid = await conn.fetchall(
                f"SELECT id FROM users WHERE id IN ({placeholders})", unique_members
            )
            if len(valid) != len(unique_members):
                raise ValidationError("One or more member IDs are invalid")

            now = utcnow()
            async with conn.transaction():
                row = await conn.fetchone(
                    """
                    INSERT INTO chat_groups (name, created_by, created_at)
                    VALUES (?, ?, ?)
                    RETURNING id, name, avatar_url
                    """,
                    [group_name, creator_id, now],
                )
                await conn.execute(
                    "INSERT INTO group_members (group_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                    [row["id"], creator_id, MemberRole.ADMIN.value, now],
                )
                for member_id in unique_members:
                    await conn.execute(
                        "INSERT INTO group_members (group_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                        [row["id"], member_id, MemberRole.MEMBER.value, now],
                    )

        logger.info(f"[Groups] Group {row['id']} '{group_name}' created by {creator_id}")
        return Group(
            id=row["id"],
            name=row["name"],
            avatarUrl=row["avatar_url"],
            createdBy=creator_id,
            members=[creator_id, *unique_members],
        )
