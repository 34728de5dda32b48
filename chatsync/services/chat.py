"""
Chat service: send orchestration and live conversation streams.

A send succeeds or fails on the message store write alone. Delivery status,
cache refresh and push notification run afterwards in a detached task and
each of them degrades on its own.
"""
import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Set, Tuple
from uuid import uuid4

from chatsync.core import metrics
from chatsync.core.errors import (
    EmptyMessageError,
    ForbiddenConversationError,
    IdentityMismatchError,
    InvalidConversationError,
    StoreUnavailableError,
)
from chatsync.core.logging import get_logger
from chatsync.schemas.message import ChatMessage, DeliveryStatus
from chatsync.services.cache import LocalCache
from chatsync.services.delivery import DeliveryTracker
from chatsync.services.directory import conversation_id as make_conversation_id, other_participant
from chatsync.services.notifications import PushNotifier
from chatsync.services.storage import ObjectStorage
from chatsync.services.store import MessageStore

logger = get_logger(__name__)

TEXT_TITLE = "New Message"
IMAGE_TITLE = "New Image"
IMAGE_BODY = "📷 You received an image"


class ChatService:
    def __init__(
        self,
        store: MessageStore,
        cache: LocalCache,
        tracker: DeliveryTracker,
        notifier: PushNotifier,
        storage: ObjectStorage,
        resubscribe_delay: float = 1.0,
    ):
        self.store = store
        self.cache = cache
        self.tracker = tracker
        self.notifier = notifier
        self.storage = storage
        self.resubscribe_delay = resubscribe_delay
        self._background: Set[asyncio.Task] = set()

    async def send(
        self,
        auth_uid: Optional[str],
        sender_id: str,
        receiver_id: str,
        text: Optional[str] = None,
        image: Optional[bytes] = None,
        image_extension: str = "jpg",
        message_id: Optional[str] = None,
        expected_conversation_id: Optional[str] = None,
    ) -> ChatMessage:
        """Validate, upload, append and hand off the secondary effects.

        Raises before any write when the sender is not the authenticated
        identity, when there is nothing to send, or when
        ``expected_conversation_id`` does not belong to the two participants.
        """
        if auth_uid is None or sender_id != auth_uid:
            logger.warning(
                "Sender identity mismatch",
                extra={"extra_data": {"sender_id": sender_id, "auth_uid": auth_uid}},
            )
            raise IdentityMismatchError("Sender ID mismatch")

        text = (text or "").strip() or None
        if text is None and not image:
            raise EmptyMessageError("Cannot send empty message")

        conversation_id = make_conversation_id(sender_id, receiver_id)
        if expected_conversation_id is not None and expected_conversation_id != conversation_id:
            raise InvalidConversationError(
                f"Conversation {expected_conversation_id} does not belong to {sender_id} and {receiver_id}"
            )

        image_url = None
        if image:
            image_url = await self.storage.upload(conversation_id, image, image_extension)

        message = ChatMessage(
            id=message_id or str(uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            image_url=image_url,
            timestamp=datetime.now(timezone.utc),
            status=DeliveryStatus.SENT,
        )

        await self.store.append(conversation_id, message)
        metrics.increment("chat_messages_sent_total", {"kind": "image" if image_url else "text"})

        self._spawn(self._after_send(message))
        return message

    def authorize(self, uid: Optional[str], conversation_id: str) -> str:
        """Return the peer of ``uid`` in the conversation.

        Raises ForbiddenConversationError when ``uid`` is not one of the two
        participants.
        """
        peer = other_participant(conversation_id, uid) if uid else None
        if peer is None:
            logger.warning(
                "Conversation access denied",
                extra={"extra_data": {"conversation_id": conversation_id, "uid": uid}},
            )
            raise ForbiddenConversationError(f"Not a participant of {conversation_id}")
        return peer

    async def mark_seen(self, uid: Optional[str], conversation_id: str, message_id: str) -> bool:
        """Mark a message seen on behalf of its recipient.

        Unknown messages and store failures report False. Anyone other than
        the recipient is refused.
        """
        self.authorize(uid, conversation_id)
        try:
            message = await self.store.get(conversation_id, message_id)
        except StoreUnavailableError:
            logger.warning(
                "Store unavailable, seen marker skipped",
                extra={"extra_data": {"conversation_id": conversation_id, "message_id": message_id}},
            )
            return False
        if message is None:
            return False
        if message.receiver_id != uid:
            raise ForbiddenConversationError("Only the recipient can mark a message seen")
        return await self.tracker.mark_seen(conversation_id, message_id)

    async def history(self, uid: Optional[str], conversation_id: str) -> Tuple[List[ChatMessage], str]:
        """Current snapshot and where it came from, 'store' or 'cache'."""
        self.authorize(uid, conversation_id)
        try:
            messages = await self.store.list_messages(conversation_id)
        except StoreUnavailableError:
            logger.warning(
                "Store unavailable, serving cached snapshot",
                extra={"extra_data": {"conversation_id": conversation_id}},
            )
            return await self.cache.load(conversation_id), "cache"

        await self.cache.save(conversation_id, messages)
        return messages, "store"

    async def cached(self, uid: Optional[str], conversation_id: str) -> List[ChatMessage]:
        self.authorize(uid, conversation_id)
        return await self.cache.load(conversation_id)

    async def stream(self, uid: Optional[str], conversation_id: str) -> AsyncIterator[List[ChatMessage]]:
        """Live snapshots of a conversation, each one cached as it arrives.

        While the store is unreachable the cached snapshot is emitted and the
        subscription is reopened after ``resubscribe_delay`` seconds.
        """
        self.authorize(uid, conversation_id)
        while True:
            subscription = self.store.subscribe(conversation_id)
            try:
                async for snapshot in subscription:
                    await self.cache.save(conversation_id, snapshot)
                    yield snapshot
            except StoreUnavailableError:
                logger.warning(
                    "Subscription lost, serving cached snapshot",
                    extra={"extra_data": {"conversation_id": conversation_id}},
                )
                yield await self.cache.load(conversation_id)
                await asyncio.sleep(self.resubscribe_delay)
            finally:
                await subscription.aclose()

    async def drain(self) -> None:
        """Wait for every pending post-send task."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Post-send task crashed", exc_info=task.exception())

    async def _after_send(self, message: ChatMessage) -> None:
        if await self.tracker.mark_delivered(message.conversation_id, message.id):
            message = message.model_copy(update={"status": DeliveryStatus.DELIVERED})
        await self.cache.upsert(message.conversation_id, message)

        if message.is_image:
            title, body = IMAGE_TITLE, IMAGE_BODY
        else:
            title, body = TEXT_TITLE, message.text
        await self.notifier.notify(
            message.conversation_id,
            message.sender_id,
            message.receiver_id,
            title,
            body,
        )
