"""
Message database model.
"""
from sqlalchemy import Column, String, DateTime, Text, Index

from chatsync.core.database import Base


class MessageRecord(Base):
    """Stored chat message, one row per (conversation, message id)."""

    __tablename__ = "messages"

    # Composite key - re-appending the same id overwrites instead of duplicating
    conversation_id = Column(String(255), primary_key=True, nullable=False)
    message_id = Column(String(255), primary_key=True, nullable=False)

    sender_id = Column(String(255), nullable=False, index=True)
    receiver_id = Column(String(255), nullable=False)

    # Content: text, image or both
    text = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)

    ts = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="sent")

    # Composite index for ordered snapshots
    __table_args__ = (
        Index("ix_messages_conversation_ts_id", "conversation_id", "ts", "message_id"),
    )

    def __repr__(self) -> str:
        return f"<MessageRecord(conversation_id={self.conversation_id}, message_id={self.message_id})>"
