"""
Process-wide service handles, built once at startup and passed down.
"""
from dataclasses import dataclass
from typing import Optional

import httpx

from chatsync.core.config import Settings
from chatsync.core.database import Base, CacheBase, Database
from chatsync.core.logging import get_logger
from chatsync.services.cache import LocalCache
from chatsync.services.chat import ChatService
from chatsync.services.delivery import DeliveryTracker
from chatsync.services.notifications import PushNotifier, ServiceAccount
from chatsync.services.profiles import ProfileStore
from chatsync.services.storage import ObjectStorage
from chatsync.services.store import MessageStore

logger = get_logger(__name__)


@dataclass
class ChatServices:
    settings: Settings
    store_db: Database
    cache_db: Database
    http: httpx.AsyncClient
    store: MessageStore
    cache: LocalCache
    profiles: ProfileStore
    storage: ObjectStorage
    tracker: DeliveryTracker
    notifier: PushNotifier
    chat: ChatService

    @classmethod
    def build(
        cls,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        account: Optional[ServiceAccount] = None,
    ) -> "ChatServices":
        """Wire every component from ``settings``.

        ``http`` and ``account`` replace the transport and the service
        account document, mainly for tests.
        """
        store_db = Database(settings.database_url, base=Base, echo=settings.debug)
        cache_db = Database(settings.cache_url, base=CacheBase, echo=settings.debug)
        store_db.create_all()
        cache_db.create_all()

        http = http or httpx.AsyncClient(timeout=settings.http_timeout)
        if account is None:
            account = ServiceAccount.load(settings)

        store = MessageStore(store_db)
        cache = LocalCache(cache_db, max_messages=settings.cache_max_messages)
        profiles = ProfileStore(store_db)
        storage = ObjectStorage(settings.storage_dir, settings.public_base_url)
        tracker = DeliveryTracker(store, retries=settings.side_effect_retries)
        notifier = PushNotifier(
            profiles,
            http,
            account,
            fcm_base_url=settings.fcm_base_url,
            scope=settings.fcm_scope,
            retries=settings.side_effect_retries,
        )
        chat = ChatService(
            store,
            cache,
            tracker,
            notifier,
            storage,
            resubscribe_delay=settings.resubscribe_delay,
        )
        logger.info(
            "Chat services ready",
            extra={"extra_data": {"push_enabled": account is not None, "cache_max_messages": settings.cache_max_messages}},
        )
        return cls(
            settings=settings,
            store_db=store_db,
            cache_db=cache_db,
            http=http,
            store=store,
            cache=cache,
            profiles=profiles,
            storage=storage,
            tracker=tracker,
            notifier=notifier,
            chat=chat,
        )

    async def close(self) -> None:
        await self.chat.drain()
        await self.http.aclose()
        self.store_db.dispose()
        self.cache_db.dispose()
