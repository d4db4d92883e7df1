"""Process-wide messaging services.

Built once in the application lifespan and shared by the WebSocket and
HTTP routers. Tests build their own against an in-memory database and
install them with ``set_services``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.auth.verifier import CredentialVerifier
from app.config import AppSettings
from app.messaging.database import Database
from app.messaging.groups import GroupDirectory
from app.messaging.membership import MembershipOracle
from app.messaging.store import MessageStore
from app.realtime.session import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class MessagingServices:
    database: Database
    verifier: CredentialVerifier
    oracle: MembershipOracle
    store: MessageStore
    groups: GroupDirectory
    sessions: SessionManager

    def close(self) -> None:
        self.database.close()


def build_services(config: AppSettings, database: Optional[Database] = None) -> MessagingServices:
    """Wire every messaging component from settings.

    Args:
        config: Loaded application settings.
        database: Use this database instead of opening ``config.database.path``.
    """
    if database is None:
        database = Database(
            config.database.path,
            pool_size=config.database.pool_size,
            acquire_timeout=config.database.acquire_timeout_seconds,
        )
    verifier = CredentialVerifier(
        config.secrets.jwt.secret_key,
        algorithm=config.auth.algorithm,
        leeway_seconds=config.auth.leeway_seconds,
    )
    oracle = MembershipOracle(database)
    store = MessageStore(database)
    sessions = SessionManager(
        verifier,
        oracle,
        store,
        max_message_bytes=config.realtime.max_message_bytes,
    )
    return MessagingServices(
        database=database,
        verifier=verifier,
        oracle=oracle,
        store=store,
        groups=GroupDirectory(database),
        sessions=sessions,
    )


_services: Optional[MessagingServices] = None


def get_services() -> Optional[MessagingServices]:
    """Return the global services (or None if not started)."""
    return _services


def set_services(services: Optional[MessagingServices]) -> None:
    """Set the global services (called from lifespan and tests)."""
    global _services
    _services = services
