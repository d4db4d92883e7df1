"""Pydantic schemas for persisted messages and the records around them.

Field names are camelCase because these models are serialized straight
onto the wire (WebSocket events and HTTP responses).
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MemberRole(str, Enum):
    """Role of a user inside a group."""
    ADMIN = "admin"
    MEMBER = "member"


class UserProfile(BaseModel):
    """A user's display metadata."""
    id: int
    username: str
    avatarUrl: Optional[str] = None


class Message(BaseModel):
    """Normalized message view returned by every store operation.

    Exactly one of ``recipientId`` / ``groupId`` is set.

    Attributes:
        id: Store-assigned message id (insertion order).
        senderId: Author of the message.
        recipientId: Direct-message peer, or None for group messages.
        groupId: Target group, or None for direct messages.
        content: Trimmed, non-empty text.
        createdAt: When the message was persisted (UTC).
        updatedAt: Last edit (UTC), None if never edited.
        senderDisplayName: Sender's username at read time.
        senderAvatar: Sender's avatar URL at read time.
    """
    id: int
    senderId: int
    recipientId: Optional[int] = None
    groupId: Optional[int] = None
    content: str
    createdAt: datetime
    updatedAt: Optional[datetime] = None
    senderDisplayName: str = "Unknown"
    senderAvatar: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.recipientId is not None


class GroupMember(UserProfile):
    """One row of a group's member list."""
    role: MemberRole
    joinedAt: datetime


class DirectThread(BaseModel):
    """Latest message with one direct-message partner."""
    otherUserId: int
    username: str
    avatarUrl: Optional[str] = None
    lastMessage: str
    lastMessageAt: datetime


class GroupSummary(BaseModel):
    """A group the caller belongs to, with the caller's role."""
    id: int
    name: str
    avatarUrl: Optional[str] = None
    role: MemberRole


class Group(BaseModel):
    """A newly created group and its full member list."""
    id: int
    name: str
    avatarUrl: Optional[str] = None
    createdBy: int
    role: MemberRole = MemberRole.ADMIN
    members: List[int] = Field(default_factory=list)
