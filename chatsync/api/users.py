"""
Users endpoint: the people the caller can chat with.
"""
from typing import Annotated

from fastapi import APIRouter, Depends

from chatsync.api.deps import get_services
from chatsync.core.logging import get_logger
from chatsync.core.security import get_current_uid
from chatsync.schemas.user import ContactResponse, ContactsListResponse, ProfileResponse
from chatsync.services.container import ChatServices
from chatsync.services.directory import list_contacts

logger = get_logger(__name__)

router = APIRouter(tags=["Users"])


@router.get(
    "/users",
    response_model=ContactsListResponse,
    summary="List contacts",
    description="Every other user, each with the conversation id shared with the caller.",
)
async def list_users(
    uid: Annotated[str, Depends(get_current_uid)],
    services: Annotated[ChatServices, Depends(get_services)],
) -> ContactsListResponse:
    profiles = await services.profiles.list_profiles()
    data = [
        ContactResponse(profile=ProfileResponse.from_model(profile), conversation_id=cid)
        for profile, cid in list_contacts(profiles, uid)
    ]

    logger.debug("Listed contacts", extra={"extra_data": {"uid": uid, "returned": len(data)}})
    return ContactsListResponse(data=data, total=len(data))
