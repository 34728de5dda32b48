"""
Pydantic schemas for chat messages and request/response validation.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


class DeliveryStatus(str, Enum):
    """Message lifecycle: sent -> delivered -> seen."""

    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)


STATUS_ORDER = [DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.SEEN]


class ChatMessage(BaseModel):
    """A single chat message.

    Delivery progress is held by ``status`` alone; ``seen`` is derived from it
    so the two can never disagree.
    """

    id: str = Field(..., min_length=1, max_length=255)
    conversation_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    receiver_id: str = Field(..., min_length=1)
    text: Optional[str] = Field(default=None, max_length=4096)
    image_url: Optional[str] = None
    timestamp: datetime
    status: DeliveryStatus = DeliveryStatus.SENT

    model_config = {"frozen": True}

    @field_validator("text", "image_url", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        """Stored records use empty strings for missing content."""
        if isinstance(v, str) and v == "":
            return None
        return v

    @field_validator("timestamp")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def require_content(self) -> "ChatMessage":
        has_text = self.text is not None and self.text.strip() != ""
        if not has_text and not self.image_url:
            raise ValueError("Message must carry text, an image or both")
        return self

    @computed_field
    @property
    def seen(self) -> bool:
        return self.status == DeliveryStatus.SEEN

    @property
    def is_image(self) -> bool:
        return bool(self.image_url)

    def to_storage(self) -> Dict[str, Any]:
        """Convert to the JSON-safe storage representation."""
        return {
            "id": self.id,
            "chatId": self.conversation_id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "text": self.text,
            "imageUrl": self.image_url,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "seen": self.seen,
        }

    @classmethod
    def from_storage(cls, data: Dict[str, Any]) -> "ChatMessage":
        """Build a message from its storage representation.

        Records written with a separate ``seen`` flag that drifted from their
        status are reconciled to ``seen``.
        """
        status = DeliveryStatus(data.get("status") or DeliveryStatus.SENT.value)
        if data.get("seen"):
            status = DeliveryStatus.SEEN
        return cls(
            id=data["id"],
            conversation_id=data["chatId"],
            sender_id=data["senderId"],
            receiver_id=data["receiverId"],
            text=data.get("text"),
            image_url=data.get("imageUrl"),
            timestamp=data["timestamp"],
            status=status,
        )


class SendMessageRequest(BaseModel):
    """Request schema for POST /conversations/{conversation_id}/messages."""

    sender_id: str = Field(..., min_length=1, max_length=255)
    receiver_id: str = Field(..., min_length=1, max_length=255)
    text: Optional[str] = Field(default=None, max_length=4096)
    message_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=255,
        description="Client generated id; re-sending the same id overwrites",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "sender_id": "u1",
                "receiver_id": "u2",
                "text": "hi",
            }
        }
    }


class MessagesListResponse(BaseModel):
    """Response schema for GET /conversations/{conversation_id}/messages."""
    conversation_id: str
    data: List[ChatMessage]
    total: int
    source: str = Field(description="'store' or 'cache'")


class SeenResponse(BaseModel):
    status: str = Field(default="accepted")
    updated: bool


class ConversationResponse(BaseModel):
    conversation_id: str


class HealthResponse(BaseModel):
    """Response schema for health endpoints."""
    status: str
    checks: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Standard error response schema."""
    detail: str
