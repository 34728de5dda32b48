"""
Pydantic schemas for user profiles and sign-in.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class SignInRequest(BaseModel):
    """Identity returned by the external sign-in provider."""

    uid: str = Field(..., min_length=1, max_length=255)
    name: str = Field(default="", max_length=255)
    email: str = Field(default="", max_length=255)
    photo_url: str = Field(default="")
    fcm_token: Optional[str] = Field(default=None, description="Push token of the signing-in device")


class ProfileResponse(BaseModel):
    uid: str
    name: str
    email: str
    photo_url: str
    last_seen: Optional[datetime] = None
    has_push_token: bool = False

    @classmethod
    def from_model(cls, profile) -> "ProfileResponse":
        return cls(
            uid=profile.uid,
            name=profile.name,
            email=profile.email,
            photo_url=profile.photo_url,
            last_seen=profile.last_seen,
            has_push_token=bool(profile.fcm_token),
        )


class SignInResponse(BaseModel):
    profile: ProfileResponse
    token: str


class ContactResponse(BaseModel):
    profile: ProfileResponse
    conversation_id: str


class ContactsListResponse(BaseModel):
    data: List[ContactResponse]
    total: int
