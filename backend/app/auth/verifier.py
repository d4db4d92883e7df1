"""Bearer credential verification for WebSocket handshakes and HTTP routes."""
import logging
from typing import Optional

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError
from pydantic import BaseModel

from app.messaging.errors import AuthenticationError

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    """Authenticated user attached to a connection or request."""
    id: int
    username: str


class CredentialVerifier:
    """Validates signed tokens against a shared secret. Holds no state.

    Args:
        secret_key: Shared signing secret.
        algorithm: JWT algorithm (HS256 by default).
        leeway_seconds: Clock skew tolerated on ``exp``.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", leeway_seconds: int = 0) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._leeway = leeway_seconds

    def verify(self, token: Optional[str]) -> Identity:
        """Decode ``token`` and return the identity it carries.

        Raises:
            AuthenticationError: Token missing, malformed, wrongly signed,
                expired, or lacking a usable ``id``/``username``.
        """
        if not token:
            raise AuthenticationError("Authentication error: No token")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                leeway=self._leeway,
            )
        except ExpiredSignatureError:
            logger.info("Rejected expired token")
            raise AuthenticationError("Authentication error: Token expired") from None
        except InvalidTokenError as e:
            logger.info(f"Rejected invalid token: {e}")
            raise AuthenticationError("Authentication error: Invalid token") from None

        user_id = payload.get("id")
        if user_id is None:
            user_id = payload.get("sub")
        username = payload.get("username")
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            raise AuthenticationError("Authentication error: Malformed token") from None
        if user_id <= 0 or not isinstance(username, str) or not username:
            raise AuthenticationError("Authentication error: Malformed token")

        return Identity(id=user_id, username=username)
