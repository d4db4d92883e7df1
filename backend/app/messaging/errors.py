"""Error taxonomy shared by the messaging store and the realtime layer.

Each error carries a ``public_message`` that is safe to send back to the
client that caused it. Handlers never broadcast these; they are reported
to the originating connection (or HTTP caller) only. ``status_code`` is
what the HTTP routes answer with.
"""
from typing import Optional


class MessagingError(Exception):
    """Base class for every error the messaging core reports to a client."""

    default_message = "Request failed"
    status_code = 500

    def __init__(self, public_message: Optional[str] = None) -> None:
        self.public_message = public_message or self.default_message
        super().__init__(self.public_message)


class AuthenticationError(MessagingError):
    """Missing, malformed, badly signed or expired credential."""

    default_message = "Authentication error: Invalid token"
    status_code = 401


class ValidationError(MessagingError):
    """Payload shape or content is not acceptable."""

    default_message = "Invalid request"
    status_code = 400


class NotFoundError(MessagingError):
    """Target does not exist, or is not owned by the caller.

    Message update/delete use the same wording for both cases so that
    non-owners cannot tell which message ids exist.
    """

    default_message = "Not found"
    status_code = 404


class AuthorizationError(MessagingError):
    """Caller is authenticated but not allowed to act on the target."""

    default_message = "Not allowed"
    status_code = 403


class StoreUnavailable(MessagingError):
    """Transient persistence failure. The client may retry."""

    default_message = "Service temporarily unavailable"
    status_code = 503


MESSAGE_NOT_OWNED = "Message not found or you are not the sender"
