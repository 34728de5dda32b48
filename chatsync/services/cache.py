"""
Local cache: offline snapshot of each conversation's messages.
"""
import json
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from chatsync.core.database import Database
from chatsync.core.logging import get_logger
from chatsync.models.cache import CacheEntry
from chatsync.schemas.message import ChatMessage

logger = get_logger(__name__)

KEY_PREFIX = "chat_"
MESSAGES_FIELD = "messages"


def cache_key(conversation_id: str) -> str:
    return f"{KEY_PREFIX}{conversation_id}"


class LocalCache:
    """Last known snapshot per conversation, replaced wholesale on save.

    Only the newest ``max_messages`` of a snapshot are kept. Neither save nor
    load ever raises: write failures are logged, read failures yield [].
    """

    def __init__(self, db: Database, max_messages: int = 500):
        self._db = db
        self.max_messages = max_messages

    async def save(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None:
        kept = list(messages)[-self.max_messages:]
        try:
            payload = json.dumps({MESSAGES_FIELD: [m.to_storage() for m in kept]})
            await run_in_threadpool(self._put_sync, cache_key(conversation_id), payload)
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.warning(
                "Cache write failed",
                extra={"extra_data": {"conversation_id": conversation_id, "error": str(e)}},
            )
            return

        logger.debug(
            "Messages cached",
            extra={
                "extra_data": {
                    "conversation_id": conversation_id,
                    "count": len(kept),
                    "dropped": len(messages) - len(kept),
                }
            },
        )

    async def load(self, conversation_id: str) -> List[ChatMessage]:
        try:
            raw = await run_in_threadpool(self._get_sync, cache_key(conversation_id))
            if raw is None:
                logger.debug("No cached messages", extra={"extra_data": {"conversation_id": conversation_id}})
                return []
            data = json.loads(raw).get(MESSAGES_FIELD, [])
            return [ChatMessage.from_storage(item) for item in data]
        except (SQLAlchemyError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Cache read failed, returning empty snapshot",
                extra={"extra_data": {"conversation_id": conversation_id, "error": str(e)}},
            )
            return []

    async def upsert(self, conversation_id: str, message: ChatMessage) -> None:
        """Replace or add one message in the cached snapshot."""
        current = [m for m in await self.load(conversation_id) if m.id != message.id]
        current.append(message)
        current.sort(key=lambda m: (m.timestamp, m.id))
        await self.save(conversation_id, current)

    # ---- blocking helpers, run on the threadpool ----

    def _put_sync(self, key: str, value: str) -> None:
        with self._db.session() as db:
            try:
                db.merge(CacheEntry(key=key, value=value))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

    def _get_sync(self, key: str) -> Optional[str]:
        with self._db.session() as db:
            entry = db.get(CacheEntry, key)
            return entry.value if entry else None
