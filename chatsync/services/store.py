"""
Message store: durable per-conversation log with live snapshot subscriptions.
"""
import asyncio
from datetime import timezone
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from chatsync.core.database import Database
from chatsync.core.errors import InvalidConversationError, MessageNotFoundError, StoreUnavailableError
from chatsync.core.logging import get_logger
from chatsync.models.message import MessageRecord
from chatsync.schemas.message import STATUS_ORDER, ChatMessage, DeliveryStatus

logger = get_logger(__name__)


class MessageStore:
    """Per-conversation message log.

    Writes run on the threadpool; every committed change wakes the
    subscribers of that conversation, which then read a fresh full snapshot.
    """

    def __init__(self, db: Database):
        self._db = db
        self._watchers: Dict[str, Set[asyncio.Queue]] = {}

    async def append(self, conversation_id: str, message: ChatMessage) -> None:
        """Write a message under its id. Re-appending an id overwrites it."""
        if message.conversation_id != conversation_id:
            raise InvalidConversationError(
                f"Message belongs to {message.conversation_id}, not {conversation_id}"
            )
        try:
            await run_in_threadpool(self._append_sync, message)
        except SQLAlchemyError as e:
            logger.error(
                "Message append failed",
                extra={"extra_data": {"conversation_id": conversation_id, "message_id": message.id, "error": str(e)}},
            )
            raise StoreUnavailableError("Message store unavailable") from e

        logger.info(
            "Message appended",
            extra={"extra_data": {"conversation_id": conversation_id, "message_id": message.id}},
        )
        self._notify(conversation_id)

    async def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        """Return the conversation snapshot ordered by timestamp, then id."""
        try:
            return await run_in_threadpool(self._list_sync, conversation_id)
        except SQLAlchemyError as e:
            logger.error(
                "Message snapshot read failed",
                extra={"extra_data": {"conversation_id": conversation_id, "error": str(e)}},
            )
            raise StoreUnavailableError("Message store unavailable") from e

    async def get(self, conversation_id: str, message_id: str) -> Optional[ChatMessage]:
        try:
            return await run_in_threadpool(self._get_sync, conversation_id, message_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Message store unavailable") from e

    async def update_status(self, conversation_id: str, message_id: str, status: DeliveryStatus) -> bool:
        """Move a message forward to ``status``.

        Returns True when the message now holds ``status``. A request that
        would move the message backwards is refused and returns False.
        """
        try:
            holds, changed = await run_in_threadpool(self._update_status_sync, conversation_id, message_id, status)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Message store unavailable") from e

        if changed:
            self._notify(conversation_id)
        return holds

    async def subscribe(self, conversation_id: str) -> AsyncIterator[List[ChatMessage]]:
        """Yield the full snapshot now and again after every change.

        Change signals coalesce, so a slow consumer only ever sees the latest
        state. Closing the iterator unregisters the watcher.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        watchers = self._watchers.setdefault(conversation_id, set())
        watchers.add(queue)
        logger.debug("Subscription opened", extra={"extra_data": {"conversation_id": conversation_id}})
        try:
            while True:
                yield await self.list_messages(conversation_id)
                await queue.get()
        finally:
            watchers.discard(queue)
            if not watchers:
                self._watchers.pop(conversation_id, None)
            logger.debug("Subscription closed", extra={"extra_data": {"conversation_id": conversation_id}})

    def watcher_count(self, conversation_id: str) -> int:
        return len(self._watchers.get(conversation_id, ()))

    def _notify(self, conversation_id: str) -> None:
        for queue in self._watchers.get(conversation_id, ()):
            if queue.empty():
                queue.put_nowait(None)

    # ---- blocking helpers, run on the threadpool ----

    def _append_sync(self, message: ChatMessage) -> None:
        with self._db.session() as db:
            try:
                db.merge(
                    MessageRecord(
                        conversation_id=message.conversation_id,
                        message_id=message.id,
                        sender_id=message.sender_id,
                        receiver_id=message.receiver_id,
                        text=message.text,
                        image_url=message.image_url,
                        ts=message.timestamp,
                        status=message.status.value,
                    )
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

    def _list_sync(self, conversation_id: str) -> List[ChatMessage]:
        with self._db.session() as db:
            records = (
                db.query(MessageRecord)
                .filter(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.ts.asc(), MessageRecord.message_id.asc())
                .all()
            )
            messages = []
            for record in records:
                try:
                    messages.append(self._to_message(record))
                except ValidationError as e:
                    logger.warning(
                        "Skipping unreadable message record",
                        extra={"extra_data": {"message_id": record.message_id, "error": str(e)}},
                    )
            return messages

    def _get_sync(self, conversation_id: str, message_id: str) -> Optional[ChatMessage]:
        with self._db.session() as db:
            record = db.get(MessageRecord, (conversation_id, message_id))
            return self._to_message(record) if record else None

    def _update_status_sync(
        self, conversation_id: str, message_id: str, status: DeliveryStatus
    ) -> Tuple[bool, bool]:
        earlier = [s.value for s in STATUS_ORDER[:status.rank]]
        with self._db.session() as db:
            try:
                result = db.execute(
                    update(MessageRecord)
                    .where(
                        MessageRecord.conversation_id == conversation_id,
                        MessageRecord.message_id == message_id,
                        MessageRecord.status.in_(earlier),
                    )
                    .values(status=status.value)
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

            if result.rowcount:
                return True, True

            record = db.get(MessageRecord, (conversation_id, message_id))
            if record is None:
                raise MessageNotFoundError(f"Message {message_id} not found in {conversation_id}")
            return record.status == status.value, False

    @staticmethod
    def _to_message(record: MessageRecord) -> ChatMessage:
        ts = record.ts
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ChatMessage(
            id=record.message_id,
            conversation_id=record.conversation_id,
            sender_id=record.sender_id,
            receiver_id=record.receiver_id,
            text=record.text,
            image_url=record.image_url,
            timestamp=ts,
            status=DeliveryStatus(record.status),
        )
