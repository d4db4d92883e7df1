"""Group directory endpoints.

Endpoints:
    GET /groups/{group_id}/members   Members with their role, earliest joiner first

Authentication:
    ``Authorization: Bearer <jwt>``. Any signed-in user may read a member
    list; posting and history stay gated on membership under ``/messages``.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends

from app.auth.dependencies import require_identity, require_services
from app.auth.verifier import Identity
from app.messaging.errors import NotFoundError
from app.messaging.schemas import GroupMember
from app.services import MessagingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/groups", tags=["groups"])


@router.get("/{group_id}/members", response_model=List[GroupMember])
async def list_group_members(
    group_id: int,
    identity: Identity = Depends(require_identity),
    services: MessagingServices = Depends(require_services),
) -> List[GroupMember]:
    members = await services.oracle.list_group_members(group_id)
    if not members:
        raise NotFoundError("No members found for this group")
    return members
