"""Tests for the realtime WebSocket endpoint."""
import json

import pytest
from fastapi import WebSocketDisconnect

from app.auth.verifier import Identity
from app.messaging.errors import MESSAGE_NOT_OWNED
from app.realtime.rooms import direct_room, personal_room
from app.realtime.session import Connection, ConnectionState

from conftest import ALICE, BOB, CAROL, DAVE, GROUP_ID, MAX_MESSAGE_BYTES, make_token


def connect(client, user_id, token=None):
    return client.websocket_connect(f"/ws?token={token or make_token(user_id)}")


def join_dm(ws, other_user_id):
    ws.send_json({"type": "joinDM", "otherUserId": other_user_id})
    ack = ws.receive_json()
    assert ack["type"] == "roomJoined", ack
    return ack["room"]


def expect_error(ws, text):
    frame = ws.receive_json()
    assert frame["type"] == "errorMessage", frame
    assert text in frame["error"]
    return frame


def assert_nothing_pending(ws, user_id):
    """Prove no frame is queued: a self-join error must be the very next frame."""
    ws.send_json({"type": "joinDM", "otherUserId": user_id})
    expect_error(ws, "Invalid or same user ID")


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:

    def test_connected_event_lists_auto_joined_rooms(self, client):
        with connect(client, ALICE) as ws:
            connected = ws.receive_json()

        assert connected == {
            "type": "connected",
            "userId": ALICE,
            "username": "alice",
            "rooms": [f"group:{GROUP_ID}", f"user:{ALICE}"],
        }

    def test_user_without_groups_gets_personal_room_only(self, client):
        with connect(client, CAROL) as ws:
            assert ws.receive_json()["rooms"] == [f"user:{CAROL}"]

    def test_bearer_header(self, client):
        headers = {"Authorization": f"Bearer {make_token(BOB)}"}
        with client.websocket_connect("/ws", headers=headers) as ws:
            assert ws.receive_json()["userId"] == BOB

    @pytest.mark.parametrize("path", [
        "/ws",
        "/ws?token=garbage",
        f"/ws?token={make_token(ALICE, secret='wrong')}",
        f"/ws?token={make_token(ALICE, expires_in=-60)}",
    ])
    def test_bad_credentials_are_rejected(self, client, services, path):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(path):
                pass

        assert exc_info.value.code == 4001
        assert services.sessions.connections == {}
        assert services.sessions.registry.room_count() == 0

    def test_store_outage_during_auto_join(self, client, services):
        """Group listing fails: the connection still opens with its personal room."""
        services.database.close()
        with connect(client, ALICE) as ws:
            assert ws.receive_json()["rooms"] == [f"user:{ALICE}"]

    def test_disconnect_cleans_up(self, client, services):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            join_dm(ws, BOB)
            assert len(services.sessions.connections) == 1

        assert services.sessions.connections == {}
        assert services.sessions.registry.room_count() == 0


# =============================================================================
# Direct messages
# =============================================================================


class TestDirectMessages:

    def test_dm_reaches_both_participants(self, client):
        with connect(client, ALICE) as alice, connect(client, BOB) as bob:
            alice.receive_json()
            bob.receive_json()
            assert join_dm(alice, BOB) == join_dm(bob, ALICE) == "dm:1:2"

            alice.send_json({"type": "sendDM", "to": BOB, "content": " Hello! ", "tempId": "t-1"})

            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["type"] == "dmMessage"
                assert frame["content"] == "Hello!"
                assert frame["senderId"] == ALICE
                assert frame["recipientId"] == BOB
                assert frame["senderDisplayName"] == "alice"
                assert frame["tempId"] == "t-1"

    def test_dm_not_seen_outside_the_room(self, client):
        with connect(client, ALICE) as alice, connect(client, BOB) as bob, \
             connect(client, DAVE) as dave:
            for ws in (alice, bob, dave):
                ws.receive_json()
            join_dm(alice, BOB)

            alice.send_json({"type": "sendDM", "to": BOB, "content": "psst"})

            frame = alice.receive_json()
            assert frame["type"] == "dmMessage"
            assert "tempId" not in frame
            # bob never joined the DM room, dave is unrelated
            assert_nothing_pending(bob, BOB)
            assert_nothing_pending(dave, DAVE)

    def test_join_dm_with_self(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "joinDM", "otherUserId": ALICE})
            expect_error(ws, "Invalid or same user ID")

    def test_join_dm_with_unknown_user(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "joinDM", "otherUserId": 999})
            expect_error(ws, "Recipient does not exist")

    def test_send_dm_to_self(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "sendDM", "to": ALICE, "content": "hi me"})
            expect_error(ws, "cannot send to self")

    def test_send_dm_to_unknown_user(self, client, services):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "sendDM", "to": 999, "content": "hello?"})
            expect_error(ws, "Recipient does not exist")

    def test_empty_content(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "sendDM", "to": BOB, "content": "   "})
            expect_error(ws, "Message content cannot be empty")


# =============================================================================
# Groups
# =============================================================================


class TestGroupMessages:

    def test_group_message_reaches_auto_joined_members(self, client):
        with connect(client, ALICE) as alice, connect(client, BOB) as bob, \
             connect(client, CAROL) as carol:
            for ws in (alice, bob, carol):
                ws.receive_json()

            bob.send_json({"type": "sendGroupMessage", "groupId": GROUP_ID, "content": "Trail at 9?", "tempId": 5})

            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["type"] == "groupMessage"
                assert frame["groupId"] == GROUP_ID
                assert frame["content"] == "Trail at 9?"
                assert frame["tempId"] == 5
            assert_nothing_pending(carol, CAROL)

    def test_non_member_cannot_join_or_post(self, client):
        with connect(client, CAROL) as ws:
            ws.receive_json()

            ws.send_json({"type": "joinGroup", "groupId": GROUP_ID})
            expect_error(ws, "Group does not exist or you are not a member")

            ws.send_json({"type": "sendGroupMessage", "groupId": GROUP_ID, "content": "hi"})
            expect_error(ws, "Group does not exist or user is not a member")

    def test_rejected_group_post_reaches_nobody_else(self, client):
        with connect(client, CAROL) as carol, connect(client, ALICE) as alice:
            carol.receive_json()
            alice.receive_json()

            carol.send_json({"type": "sendGroupMessage", "groupId": GROUP_ID, "content": "hi"})

            expect_error(carol, "not a member")
            assert_nothing_pending(alice, ALICE)

    def test_member_join_group_is_acknowledged(self, client, services):
        with connect(client, DAVE) as ws:
            ws.receive_json()
            ws.send_json({"type": "joinGroup", "groupId": GROUP_ID})
            assert ws.receive_json() == {"type": "roomJoined", "room": f"group:{GROUP_ID}"}

    def test_every_device_of_a_user_receives(self, client):
        with connect(client, ALICE) as phone, connect(client, ALICE) as laptop, \
             connect(client, DAVE) as dave:
            for ws in (phone, laptop, dave):
                ws.receive_json()

            dave.send_json({"type": "sendGroupMessage", "groupId": GROUP_ID, "content": "summit!"})

            for ws in (phone, laptop, dave):
                assert ws.receive_json()["content"] == "summit!"


# =============================================================================
# Edit / delete
# =============================================================================


class TestEditDelete:

    def _open_dm(self, alice, bob):
        alice.receive_json()
        bob.receive_json()
        join_dm(alice, BOB)
        join_dm(bob, ALICE)
        alice.send_json({"type": "sendDM", "to": BOB, "content": "helo"})
        message_id = alice.receive_json()["id"]
        bob.receive_json()
        return message_id

    def test_update_is_broadcast(self, client):
        with connect(client, ALICE) as alice, connect(client, BOB) as bob:
            message_id = self._open_dm(alice, bob)

            alice.send_json({"type": "updateMessage", "messageId": message_id, "content": "hello"})

            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["type"] == "messageUpdated"
                assert frame["id"] == message_id
                assert frame["content"] == "hello"
                assert frame["updatedAt"] is not None

    def test_only_sender_may_edit_or_delete(self, client):
        with connect(client, ALICE) as alice, connect(client, BOB) as bob:
            message_id = self._open_dm(alice, bob)

            bob.send_json({"type": "updateMessage", "messageId": message_id, "content": "mine now"})
            expect_error(bob, MESSAGE_NOT_OWNED)
            bob.send_json({"type": "deleteMessage", "messageId": message_id})
            expect_error(bob, MESSAGE_NOT_OWNED)
            assert_nothing_pending(alice, ALICE)

    def test_delete_is_broadcast_once(self, client):
        with connect(client, ALICE) as alice, connect(client, BOB) as bob:
            message_id = self._open_dm(alice, bob)

            alice.send_json({"type": "deleteMessage", "messageId": message_id})
            for ws in (alice, bob):
                assert ws.receive_json() == {"type": "messageDeleted", "messageId": message_id}

            alice.send_json({"type": "deleteMessage", "messageId": message_id})
            expect_error(alice, MESSAGE_NOT_OWNED)
            assert_nothing_pending(bob, BOB)


# =============================================================================
# Malformed input
# =============================================================================


class TestMalformedFrames:

    def test_invalid_json_keeps_connection_open(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()

            ws.send_text("{not json")
            expect_error(ws, "Invalid JSON format")

            assert_nothing_pending(ws, ALICE)

    def test_unknown_event_type(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "typing"})
            expect_error(ws, "Unknown message type: typing")

    def test_payload_shape_mismatch(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            ws.send_json({"type": "sendDM", "content": "no recipient"})
            expect_error(ws, "Invalid sendDM payload")

    def test_boolean_id_is_not_a_user(self, client):
        with connect(client, BOB) as ws:
            ws.receive_json()
            ws.send_json({"type": "sendDM", "to": True, "content": "hi alice?"})
            expect_error(ws, "Invalid sendDM payload: to")

    def test_oversized_frame(self, client):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            frame = json.dumps({"type": "sendDM", "to": BOB, "content": "x" * MAX_MESSAGE_BYTES})
            ws.send_text(frame)
            expect_error(ws, "Message too large")

    def test_store_outage_is_reported_generically(self, client, services):
        with connect(client, ALICE) as ws:
            ws.receive_json()
            services.database.close()

            ws.send_json({"type": "sendDM", "to": BOB, "content": "hello?"})
            expect_error(ws, "Failed to send DM")


# =============================================================================
# Delivery failures
# =============================================================================


class FlakySocket:
    """In-process stand-in for a WebSocket whose sends can be made to fail."""

    def __init__(self, frames=(), token=None):
        self.frames = list(frames)
        self.query_params = {"token": token} if token else {}
        self.headers = {}
        self.broken = False
        self.sent = []
        self.close_codes = []

    async def accept(self):
        pass

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("connection reset")
        self.sent.append(message)

    async def receive(self):
        if not self.frames:
            return {"type": "websocket.disconnect", "code": 1000}
        frame = self.frames.pop(0)
        if frame is None:
            self.broken = True
            frame = self.frames.pop(0)
        return {"type": "websocket.receive", "text": json.dumps(frame)}

    async def close(self, code=1000, reason=None):
        self.close_codes.append(code)


class TestDeliveryFailures:

    @pytest.mark.asyncio
    async def test_failed_send_drops_and_closes(self, services):
        sessions = services.sessions
        socket = FlakySocket()
        socket.broken = True
        conn = Connection(websocket=socket, identity=Identity(id=BOB, username="bob"))
        conn.state = ConnectionState.ACTIVE
        sessions.connections[conn.id] = conn
        sessions.registry.register(conn.id)
        sessions.registry.join(conn.id, personal_room(BOB))

        await sessions.notify_user(BOB, {"type": "groupCreated", "id": 99})

        assert conn.state == ConnectionState.CLOSED
        assert sessions.connections == {}
        assert sessions.registry.room_count() == 0
        assert socket.close_codes == [1011]

    @pytest.mark.asyncio
    async def test_receive_loop_ends_after_dropped_delivery(self, services):
        """The loop stops reading once its own broadcast fails."""
        socket = FlakySocket(
            frames=[
                {"type": "joinDM", "otherUserId": ALICE},
                None,
                {"type": "sendDM", "to": ALICE, "content": "anyone there?"},
                {"type": "joinDM", "otherUserId": DAVE},
            ],
            token=make_token(BOB),
        )

        await services.sessions.serve(socket)

        assert [m["type"] for m in socket.sent] == ["connected", "roomJoined"]
        assert socket.sent[1]["room"] == direct_room(BOB, ALICE)
        assert socket.frames == [{"type": "joinDM", "otherUserId": DAVE}]
        assert socket.close_codes == [1011]
        assert services.sessions.connections == {}
