"""
Delivery state machine: best-effort sent -> delivered -> seen transitions.
"""
from chatsync.core import metrics
from chatsync.core.errors import MessageNotFoundError, StoreUnavailableError
from chatsync.core.logging import get_logger
from chatsync.schemas.message import DeliveryStatus
from chatsync.services.store import MessageStore

logger = get_logger(__name__)


class DeliveryTracker:
    """Applies status transitions without ever failing the caller.

    Each transition gets at most ``1 + retries`` attempts. A message whose
    ``delivered`` update fails every attempt stays ``sent``.
    """

    def __init__(self, store: MessageStore, retries: int = 1):
        self._store = store
        self._retries = retries

    async def mark_delivered(self, conversation_id: str, message_id: str) -> bool:
        return await self._transition(conversation_id, message_id, DeliveryStatus.DELIVERED)

    async def mark_seen(self, conversation_id: str, message_id: str) -> bool:
        """Mark a message seen. Repeating it is harmless."""
        return await self._transition(conversation_id, message_id, DeliveryStatus.SEEN)

    async def _transition(self, conversation_id: str, message_id: str, status: DeliveryStatus) -> bool:
        context = {"conversation_id": conversation_id, "message_id": message_id, "status": status.value}

        for attempt in range(1, self._retries + 2):
            try:
                applied = await self._store.update_status(conversation_id, message_id, status)
            except MessageNotFoundError:
                logger.warning("Status update for unknown message", extra={"extra_data": context})
                metrics.increment("chat_status_updates_total", {"status": status.value, "result": "not_found"})
                return False
            except StoreUnavailableError as e:
                logger.warning(
                    "Status update failed",
                    extra={"extra_data": {**context, "attempt": attempt, "error": str(e)}},
                )
                continue

            result = "ok" if applied else "refused"
            metrics.increment("chat_status_updates_total", {"status": status.value, "result": result})
            if applied:
                logger.info("Message status updated", extra={"extra_data": context})
            else:
                logger.info("Status update would regress, ignored", extra={"extra_data": context})
            return applied

        metrics.increment("chat_status_updates_total", {"status": status.value, "result": "failed"})
        logger.error("Status update abandoned", extra={"extra_data": context})
        return False
