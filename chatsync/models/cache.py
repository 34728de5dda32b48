"""
Local cache database model.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Text

from chatsync.core.database import CacheBase


class CacheEntry(CacheBase):
    """Key-value snapshot, value is a JSON document."""

    __tablename__ = "cache_entries"

    key = Column(String(255), primary_key=True, nullable=False)
    value = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CacheEntry(key={self.key})>"
