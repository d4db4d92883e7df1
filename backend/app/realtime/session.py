"""Realtime session manager.

Owns every live WebSocket connection, from handshake to disconnect:

    CONNECTING -> AUTHENTICATED -> ACTIVE -> CLOSED

Key behaviour:
    - Handshake: the bearer token is verified before the socket is
      accepted. A bad token closes the socket with code 4001 and nothing
      is registered.
    - Auto-join: every connection joins its user's personal room, then
      the room of every group the user belongs to. If the group listing
      fails, the connection still goes ACTIVE with the personal room only.
    - Events from one connection are handled strictly in the order they
      arrive (the receive loop awaits each handler). Other connections are
      served concurrently by the event loop.
    - Fan-out goes to every connection in the room, including the sender's
      own connections (multi-device echo). Connections whose send fails are
      dropped and closed with code 1011.
    - Errors never leave a handler: they become an ``errorMessage`` event for
      the originating connection only.

Thread Safety:
    Designed for a single event loop. Registry mutations never await, so
    they cannot interleave with each other.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from app.auth.verifier import CredentialVerifier, Identity
from app.messaging.errors import (
    AuthenticationError,
    AuthorizationError,
    MessagingError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)
from app.messaging.membership import MembershipOracle
from app.messaging.schemas import Message
from app.messaging.store import MessageStore

from .events import (
    ClientEvent,
    DeleteMessagePayload,
    JoinDMPayload,
    JoinGroupPayload,
    SendDMPayload,
    SendGroupMessagePayload,
    ServerEvent,
    UpdateMessagePayload,
    parse_frame,
)
from .rooms import RoomRegistry, direct_room, group_room, personal_room

logger = logging.getLogger(__name__)

# Close code sent when the handshake credential is rejected
AUTH_FAILED_CLOSE_CODE = 4001

# Close code sent to a connection dropped after a failed delivery
DELIVERY_FAILED_CLOSE_CODE = 1011

# Reported when a handler fails for a reason the client cannot act on
FAILURE_MESSAGES: Dict[ClientEvent, str] = {
    ClientEvent.JOIN_DM: "Failed to join DM room",
    ClientEvent.JOIN_GROUP: "Failed to join group room",
    ClientEvent.SEND_DM: "Failed to send DM",
    ClientEvent.SEND_GROUP_MESSAGE: "Failed to send group message",
    ClientEvent.UPDATE_MESSAGE: "Failed to update message",
    ClientEvent.DELETE_MESSAGE: "Failed to delete message",
}


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Connection:
    """One live WebSocket and the identity it authenticated as."""
    websocket: WebSocket
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    identity: Optional[Identity] = None
    state: ConnectionState = ConnectionState.CONNECTING

    @property
    def user_id(self) -> int:
        return self.identity.id


def message_room(message: Message) -> str:
    """Room that watches a persisted message."""
    if message.recipientId is not None:
        return direct_room(message.senderId, message.recipientId)
    return group_room(message.groupId)


def extract_token(websocket: WebSocket) -> Optional[str]:
    """Credential from ``?token=`` or an ``Authorization: Bearer`` header."""
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


class SessionManager:
    """Connection lifecycle, room subscriptions and event handling.

    Attributes:
        registry: Which rooms each connection is subscribed to.
        connections: connection_id -> Connection for every live socket.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        oracle: MembershipOracle,
        store: MessageStore,
        max_message_bytes: int = 1_000_000,
    ) -> None:
        self._verifier = verifier
        self._oracle = oracle
        self._store = store
        self._max_message_bytes = max_message_bytes
        self.registry = RoomRegistry()
        self.connections: Dict[str, Connection] = {}
        self._handlers: Dict[ClientEvent, Callable[[Connection, Any], Awaitable[None]]] = {
            ClientEvent.JOIN_DM: self.handle_join_dm,
            ClientEvent.JOIN_GROUP: self.handle_join_group,
            ClientEvent.SEND_DM: self.handle_send_dm,
            ClientEvent.SEND_GROUP_MESSAGE: self.handle_send_group_message,
            ClientEvent.UPDATE_MESSAGE: self.handle_update_message,
            ClientEvent.DELETE_MESSAGE: self.handle_delete_message,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def serve(self, websocket: WebSocket) -> None:
        """Run one connection from handshake until it closes."""
        conn = await self.open(websocket)
        if conn is None:
            return

        try:
            while conn.state != ConnectionState.CLOSED:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                text = message.get("text")
                if text is None:
                    text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
                await self.handle_frame(conn, text)
        except WebSocketDisconnect as e:
            logger.info(f"[WS] User disconnected: {conn.identity.username} (code={e.code})")
        finally:
            self.disconnect(conn)

    async def open(self, websocket: WebSocket) -> Optional[Connection]:
        """Verify the handshake credential, accept, and auto-join rooms.

        Returns:
            The ACTIVE connection, or None if the handshake was rejected.
        """
        conn = Connection(websocket=websocket)
        try:
            conn.identity = self._verifier.verify(extract_token(websocket))
        except AuthenticationError as e:
            logger.warning(f"[WS] Handshake rejected: {e.public_message}")
            await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=e.public_message)
            return None

        await websocket.accept()
        conn.state = ConnectionState.AUTHENTICATED
        self.connections[conn.id] = conn
        self.registry.register(conn.id)
        logger.info(f"[WS] User connected: {conn.identity.username} (id={conn.user_id})")

        try:
            await self._auto_join(conn)
        except BaseException:
            self.disconnect(conn)
            raise
        conn.state = ConnectionState.ACTIVE

        await self._safe_send(conn, {
            "type": ServerEvent.CONNECTED.value,
            "userId": conn.user_id,
            "username": conn.identity.username,
            "rooms": sorted(self.registry.rooms_of(conn.id)),
        })
        return conn

    async def _auto_join(self, conn: Connection) -> None:
        self.registry.join(conn.id, personal_room(conn.user_id))
        try:
            group_ids = await self._oracle.list_groups_for_user(conn.user_id)
        except StoreUnavailable:
            logger.warning(
                f"[WS] Could not list groups for user {conn.user_id}; "
                "continuing with the personal room only"
            )
            return

        for group_id in group_ids:
            self.registry.join(conn.id, group_room(group_id))
        if group_ids:
            logger.info(
                f"[WS] {conn.identity.username} joined group rooms: "
                f"{', '.join(group_room(g) for g in group_ids)}"
            )

    def disconnect(self, conn: Connection) -> None:
        """Drop a connection and its whole subscription set. Idempotent."""
        if conn.state == ConnectionState.CLOSED:
            return
        conn.state = ConnectionState.CLOSED
        rooms = self.registry.discard(conn.id)
        self.connections.pop(conn.id, None)
        logger.debug(f"[WS] Connection {conn.id} left {len(rooms)} rooms")

    # =========================================================================
    # Event dispatch
    # =========================================================================

    async def handle_frame(self, conn: Connection, text: str) -> None:
        """Decode, validate and dispatch one client frame.

        This is the error boundary for every handler: failures turn into an
        ``errorMessage`` for this connection and the loop keeps going.
        """
        event: Optional[ClientEvent] = None
        try:
            if len(text.encode("utf-8")) > self._max_message_bytes:
                raise ValidationError("Message too large")
            try:
                frame = json.loads(text)
            except json.JSONDecodeError:
                raise ValidationError("Invalid JSON format") from None

            event, payload = parse_frame(frame)
            logger.debug(f"[WS] {conn.identity.username} -> {event.value}")
            await self._handlers[event](conn, payload)
        except StoreUnavailable:
            await self.emit_error(conn, FAILURE_MESSAGES.get(event, "Request failed"))
        except MessagingError as e:
            await self.emit_error(conn, e.public_message)
        except Exception:
            logger.exception(f"[WS] Unhandled error in {event.value if event else 'frame'} handler")
            await self.emit_error(conn, FAILURE_MESSAGES.get(event, "Internal server error"))

    async def handle_join_dm(self, conn: Connection, payload: JoinDMPayload) -> None:
        other_user_id = payload.otherUserId
        if other_user_id == conn.user_id:
            raise ValidationError("Invalid or same user ID")
        if not await self._oracle.user_exists(other_user_id):
            raise NotFoundError("Recipient does not exist")
        await self._join(conn, direct_room(conn.user_id, other_user_id))

    async def handle_join_group(self, conn: Connection, payload: JoinGroupPayload) -> None:
        if not await self._oracle.is_group_member(payload.groupId, conn.user_id):
            raise AuthorizationError("Group does not exist or you are not a member")
        await self._join(conn, group_room(payload.groupId))

    async def handle_send_dm(self, conn: Connection, payload: SendDMPayload) -> None:
        if payload.to == conn.user_id:
            raise ValidationError("Recipient and content required, cannot send to self")
        message = await self._store.send(conn.user_id, recipient_id=payload.to, content=payload.content)
        await self.publish_message(ServerEvent.DM_MESSAGE, message, temp_id=payload.tempId)

    async def handle_send_group_message(self, conn: Connection, payload: SendGroupMessagePayload) -> None:
        message = await self._store.send(conn.user_id, group_id=payload.groupId, content=payload.content)
        await self.publish_message(ServerEvent.GROUP_MESSAGE, message, temp_id=payload.tempId)

    async def handle_update_message(self, conn: Connection, payload: UpdateMessagePayload) -> None:
        message = await self._store.update(payload.messageId, conn.user_id, payload.content)
        await self.publish_message(ServerEvent.MESSAGE_UPDATED, message)

    async def handle_delete_message(self, conn: Connection, payload: DeleteMessagePayload) -> None:
        message = await self._store.delete(payload.messageId, conn.user_id)
        await self.publish_deleted(message)

    async def _join(self, conn: Connection, room_id: str) -> None:
        if conn.state == ConnectionState.CLOSED:
            return
        if self.registry.join(conn.id, room_id):
            logger.info(f"[WS] {conn.identity.username} joined room {room_id}")
        await self._safe_send(conn, {"type": ServerEvent.ROOM_JOINED.value, "room": room_id})

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def publish_message(
        self,
        event: ServerEvent,
        message: Message,
        temp_id: Optional[Any] = None,
    ) -> None:
        """Broadcast a persisted message to its room, echoing ``temp_id``."""
        payload = {"type": event.value, **message.model_dump(mode="json")}
        if temp_id is not None:
            payload["tempId"] = temp_id
        await self.broadcast(payload, message_room(message))

    async def publish_deleted(self, message: Message) -> None:
        await self.broadcast(
            {"type": ServerEvent.MESSAGE_DELETED.value, "messageId": message.id},
            message_room(message),
        )

    async def notify_user(self, user_id: int, payload: dict) -> None:
        """Send an out-of-band event to every connection of one user."""
        await self.broadcast(payload, personal_room(user_id))

    async def broadcast(self, message: dict, room_id: str) -> None:
        """Send to every connection subscribed to ``room_id`` concurrently.

        Connections that fail to receive are dropped from the registry and
        their socket is closed, which ends their receive loop.
        """
        targets = [
            self.connections[cid]
            for cid in self.registry.members_of(room_id)
            if cid in self.connections
        ]
        if not targets:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in targets],
            return_exceptions=True,
        )
        for conn, success in zip(targets, results):
            if success is not True:
                logger.debug(f"[WS] Dropping dead connection {conn.id} from room {room_id}")
                self.disconnect(conn)
                await self._close_quietly(conn)

    async def emit_error(self, conn: Connection, error: str) -> None:
        await self._safe_send(conn, {"type": ServerEvent.ERROR.value, "error": error})

    async def _safe_send(self, conn: Connection, message: dict) -> bool:
        """Send to one connection.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await conn.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {conn.id}: {e}")
            return False

    async def _close_quietly(self, conn: Connection) -> None:
        try:
            await conn.websocket.close(code=DELIVERY_FAILED_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"Connection {conn.id} was already closed: {e}")
