"""
Sign-in endpoint: syncs the profile document and issues a session token.
"""
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from chatsync.api.deps import get_services
from chatsync.core.logging import get_logger
from chatsync.core.security import issue_session_token
from chatsync.schemas.message import ErrorResponse
from chatsync.schemas.user import ProfileResponse, SignInRequest, SignInResponse
from chatsync.services.container import ChatServices

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post(
    "/sign-in",
    response_model=SignInResponse,
    responses={
        409: {"model": ErrorResponse, "description": "Display name already taken"},
        503: {"model": ErrorResponse, "description": "Session signing not configured"},
    },
    summary="Sign in",
    description="Record the identity returned by the sign-in provider and issue a session token.",
)
async def sign_in(
    identity: SignInRequest,
    services: Annotated[ChatServices, Depends(get_services)],
) -> SignInResponse:
    """
    Sync the caller's profile.

    - First sign-in creates the profile document
    - Later sign-ins refresh last-seen and the push token (cleared when absent)
    - A display name already used by another identity is rejected
    """
    settings = services.settings
    if not settings.is_auth_secret_configured:
        logger.error("AUTH_SECRET environment variable not configured")
        raise HTTPException(status_code=503, detail="authentication not configured")

    profile = await services.profiles.sign_in(identity)
    return SignInResponse(
        profile=ProfileResponse.from_model(profile),
        token=issue_session_token(
            settings.auth_secret,
            profile.uid,
            expires_delta=timedelta(seconds=settings.session_ttl),
        ),
    )
