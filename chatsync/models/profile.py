"""
User profile database model.
"""
from sqlalchemy import Column, String, DateTime, Text

from chatsync.core.database import Base


class UserProfile(Base):
    """Profile document keyed by identity."""

    __tablename__ = "users"

    uid = Column(String(255), primary_key=True, nullable=False)
    name = Column(String(255), nullable=False, default="", index=True)
    email = Column(String(255), nullable=False, default="")
    photo_url = Column(Text, nullable=False, default="")

    # Cleared when a sign-in yields no token
    fcm_token = Column(Text, nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UserProfile(uid={self.uid}, name={self.name})>"

