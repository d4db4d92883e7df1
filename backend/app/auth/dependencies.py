"""FastAPI dependencies for bearer-authenticated HTTP routes."""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.messaging.errors import StoreUnavailable
from app.services import MessagingServices, get_services

from .verifier import Identity

security = HTTPBearer(auto_error=False)


def require_services() -> MessagingServices:
    services = get_services()
    if services is None:
        raise StoreUnavailable()
    return services


def require_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: MessagingServices = Depends(require_services),
) -> Identity:
    """Resolve the caller from ``Authorization: Bearer <token>``.

    A missing header and a bad token both surface as
    ``AuthenticationError`` (401).
    """
    token = credentials.credentials if credentials else None
    return services.verifier.verify(token)
