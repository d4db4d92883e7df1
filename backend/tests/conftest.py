"""Shared test fixtures and configuration for backend tests.

Seed data:
    users   1 alice, 2 bob, 3 carol, 4 dave
    group   7 "weekend-hikers": alice (admin), bob, dave. carol is not a member.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from app.config import AppSettings, JWTSecrets, RealtimeSettings, Secrets
from app.main import app
from app.messaging.database import Database, utcnow
from app.services import build_services, set_services

JWT_SECRET = "test-secret"
MAX_MESSAGE_BYTES = 4096

ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4
USERS = {ALICE: "alice", BOB: "bob", CAROL: "carol", DAVE: "dave"}
GROUP_ID = 7
GROUP_MEMBERS = ((ALICE, "admin"), (BOB, "member"), (DAVE, "member"))


async def _seed(db: Database) -> None:
    async with db.acquire() as conn:
        for user_id, username in USERS.items():
            await conn.execute(
                "INSERT INTO users (id, username, avatar_url) VALUES (?, ?, ?)",
                [user_id, username, f"https://cdn.example.com/{username}.png"],
            )
        await conn.execute(
            "INSERT INTO chat_groups (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
            [GROUP_ID, "weekend-hikers", ALICE, utcnow()],
        )
        for user_id, role in GROUP_MEMBERS:
            await conn.execute(
                "INSERT INTO group_members (group_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                [GROUP_ID, user_id, role, utcnow()],
            )


def make_token(user_id, username=None, secret=JWT_SECRET, expires_in=3600, **claims):
    """Mint an HS256 token the way the account service does."""
    payload = {
        "id": user_id,
        "username": username if username is not None else USERS.get(user_id, f"user{user_id}"),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def settings():
    return AppSettings(
        secrets=Secrets(jwt=JWTSecrets(secret_key=JWT_SECRET)),
        realtime=RealtimeSettings(max_message_bytes=MAX_MESSAGE_BYTES),
    )


@pytest.fixture
def database():
    """Seeded in-memory database."""
    db = Database(":memory:", pool_size=4, acquire_timeout=1.0)
    asyncio.run(_seed(db))
    yield db
    db.close()


@pytest.fixture
def services(settings, database):
    services = build_services(settings, database=database)
    set_services(services)
    yield services
    set_services(None)


@pytest.fixture
def client(services):
    """TestClient whose WebSockets all share one event loop."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user_id):
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers
