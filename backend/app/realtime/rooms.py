"""Room identifiers and the connection/room subscription registry.

Room ids are derived, never stored. Each kind has its own prefix so ids
from different kinds cannot collide:

    personal  ->  "user:<userId>"
    direct    ->  "dm:<lowerId>:<higherId>"
    group     ->  "group:<groupId>"

Direct rooms sort the two ids numerically, so both participants compute
the same room no matter who opens it.
"""
import logging
from typing import Dict, List, Set

logger = logging.getLogger(__name__)

PERSONAL_PREFIX = "user"
DIRECT_PREFIX = "dm"
GROUP_PREFIX = "group"
SEPARATOR = ":"


def personal_room(user_id: int) -> str:
    return f"{PERSONAL_PREFIX}{SEPARATOR}{user_id}"


def direct_room(user_a: int, user_b: int) -> str:
    """Canonical room for a direct conversation between two distinct users."""
    if user_a == user_b:
        raise ValueError("A direct room needs two different users")
    low, high = sorted((user_a, user_b))
    return f"{DIRECT_PREFIX}{SEPARATOR}{low}{SEPARATOR}{high}"


def group_room(group_id: int) -> str:
    return f"{GROUP_PREFIX}{SEPARATOR}{group_id}"


class RoomRegistry:
    """Tracks which rooms each live connection is subscribed to.

    Keyed by connection id (not user id) so one user can hold several
    connections at once. Both directions are kept for O(1) fan-out lookup
    and O(rooms) disconnect cleanup.
    """

    def __init__(self) -> None:
        # connection_id -> rooms it is subscribed to
        self._rooms_by_connection: Dict[str, Set[str]] = {}
        # room_id -> subscribed connection ids
        self._connections_by_room: Dict[str, Set[str]] = {}

    def register(self, connection_id: str) -> None:
        self._rooms_by_connection.setdefault(connection_id, set())

    def join(self, connection_id: str, room_id: str) -> bool:
        """Subscribe a connection to a room.

        Returns:
            True if the subscription is new, False if it already existed.

        Raises:
            KeyError: The connection was never registered (or is gone).
        """
        rooms = self._rooms_by_connection[connection_id]
        if room_id in rooms:
            return False
        rooms.add(room_id)
        self._connections_by_room.setdefault(room_id, set()).add(connection_id)
        return True

    def discard(self, connection_id: str) -> Set[str]:
        """Drop a connection and its whole subscription set at once.

        Returns:
            The rooms the connection was subscribed to.
        """
        rooms = self._rooms_by_connection.pop(connection_id, set())
        for room_id in rooms:
            members = self._connections_by_room.get(room_id)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._connections_by_room[room_id]
        return rooms

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._rooms_by_connection.get(connection_id, set()))

    def members_of(self, room_id: str) -> List[str]:
        return list(self._connections_by_room.get(room_id, set()))

    def room_count(self) -> int:
        return len(self._connections_by_room)
