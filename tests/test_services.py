"""
Tests for the message store, local cache, delivery tracker and chat service.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from chatsync.core.errors import (
    DuplicateNameError,
    EmptyMessageError,
    IdentityMismatchError,
    InvalidConversationError,
    ForbiddenConversationError,
    StoreUnavailableError,
    UploadError,
)
from chatsync.schemas.message import ChatMessage, DeliveryStatus
from chatsync.schemas.user import SignInRequest
from chatsync.services.cache import LocalCache, cache_key
from chatsync.services.directory import conversation_id, list_contacts, other_participant


BASE_TS = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def make_message(message_id: str, minutes: int = 0, text="hello", image_url=None, cid="u1_u2",
                 status=DeliveryStatus.SENT) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        conversation_id=cid,
        sender_id="u1",
        receiver_id="u2",
        text=text,
        image_url=image_url,
        timestamp=BASE_TS + timedelta(minutes=minutes),
        status=status,
    )


async def sign_in(services, uid: str, name: str, token=None):
    return await services.profiles.sign_in(SignInRequest(uid=uid, name=name, email=f"{uid}@example.com", fcm_token=token))


class TestConversationDirectory:
    """Tests for conversation id derivation."""

    @pytest.mark.parametrize("a,b", [("u1", "u2"), ("zed", "amy"), ("same", "same"), ("A", "a")])
    def test_symmetric(self, a, b):
        assert conversation_id(a, b) == conversation_id(b, a)

    def test_sorted_join(self):
        assert conversation_id("u2", "u1") == "u1_u2"

    def test_list_contacts_excludes_self(self):
        class Profile:
            def __init__(self, uid):
                self.uid = uid

        contacts = list_contacts([Profile("u1"), Profile("u2"), Profile("u3")], "u2")
        assert [(p.uid, cid) for p, cid in contacts] == [("u1", "u1_u2"), ("u3", "u2_u3")]

    @pytest.mark.parametrize("cid,uid,peer", [
        ("u1_u2", "u1", "u2"),
        ("u1_u2", "u2", "u1"),
        ("u1_u1", "u1", "u1"),
        ("a_b_c", "a", "b_c"),
        ("a_b_c", "a_b", "c"),
    ])
    def test_other_participant(self, cid, uid, peer):
        assert other_participant(cid, uid) == peer

    @pytest.mark.parametrize("cid,uid", [("u1_u2", "u3"), ("u1_u2", "u"), ("u1_u2", "1_u2"), ("u1u2", "u1")])
    def test_outsider_has_no_peer(self, cid, uid):
        assert other_participant(cid, uid) is None


class TestChatMessage:
    """Tests for the message model and its storage representation."""

    def test_storage_round_trip_text_only(self):
        message = make_message("m1", text="hi", image_url=None)
        assert ChatMessage.from_storage(message.to_storage()) == message

    def test_storage_round_trip_image_only(self):
        message = make_message("m2", text=None, image_url="http://testserver/files/a.jpg",
                               status=DeliveryStatus.SEEN)
        restored = ChatMessage.from_storage(message.to_storage())
        assert restored == message
        assert restored.text is None
        assert restored.seen is True

    def test_storage_uses_original_keys(self):
        data = make_message("m1").to_storage()
        assert set(data) == {"id", "chatId", "senderId", "receiverId", "text", "imageUrl",
                             "timestamp", "status", "seen"}
        assert data["seen"] is False

    def test_drifted_seen_flag_reconciled(self):
        data = make_message("m1", status=DeliveryStatus.DELIVERED).to_storage()
        data["seen"] = True
        assert ChatMessage.from_storage(data).status == DeliveryStatus.SEEN

    def test_seen_follows_status(self):
        assert make_message("m1", status=DeliveryStatus.DELIVERED).seen is False
        assert make_message("m1", status=DeliveryStatus.SEEN).seen is True

    def test_requires_text_or_image(self):
        with pytest.raises(ValidationError):
            make_message("m1", text=None, image_url=None)
        with pytest.raises(ValidationError):
            make_message("m1", text="   ", image_url="")

    def test_naive_timestamp_is_utc(self):
        message = ChatMessage(id="m1", conversation_id="u1_u2", sender_id="u1", receiver_id="u2",
                              text="hi", timestamp=datetime(2025, 1, 15, 10, 0))
        assert message.timestamp.tzinfo is not None
        assert message.timestamp == BASE_TS


class TestMessageStore:
    """Tests for append, snapshots, status updates and subscriptions."""

    @pytest.mark.asyncio
    async def test_append_is_idempotent_on_id(self, services):
        await services.store.append("u1_u2", make_message("m1", text="first"))
        await services.store.append("u1_u2", make_message("m1", text="edited"))

        snapshot = await services.store.list_messages("u1_u2")
        assert [(m.id, m.text) for m in snapshot] == [("m1", "edited")]

    @pytest.mark.asyncio
    async def test_append_rejects_foreign_conversation(self, services):
        with pytest.raises(InvalidConversationError):
            await services.store.append("u1_u3", make_message("m1"))

    @pytest.mark.asyncio
    async def test_snapshot_sorted_regardless_of_insertion_order(self, services):
        for message_id, minutes in [("c", 2), ("a", 0), ("b", 1)]:
            await services.store.append("u1_u2", make_message(message_id, minutes=minutes))

        stream = services.store.subscribe("u1_u2")
        snapshot = await stream.__anext__()
        await stream.aclose()
        assert [m.id for m in snapshot] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_subscription_emits_full_snapshot_on_change(self, services):
        stream = services.store.subscribe("u1_u2")
        assert await stream.__anext__() == []

        await services.store.append("u1_u2", make_message("m1", minutes=1))
        second = await asyncio.wait_for(stream.__anext__(), timeout=2)
        assert [m.id for m in second] == ["m1"]

        await services.store.append("u1_u2", make_message("m0", minutes=0))
        third = await asyncio.wait_for(stream.__anext__(), timeout=2)
        assert [m.id for m in third] == ["m0", "m1"]

        await stream.aclose()
        assert services.store.watcher_count("u1_u2") == 0

    @pytest.mark.asyncio
    async def test_subscription_ignores_other_conversations(self, services):
        stream = services.store.subscribe("u1_u2")
        await stream.__anext__()

        await services.store.append("u1_u3", make_message("x", cid="u1_u3"))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(stream.__anext__(), timeout=0.2)
        # Cancelling the pending read closes the subscription
        assert services.store.watcher_count("u1_u2") == 0

    @pytest.mark.asyncio
    async def test_update_status_moves_forward_only(self, services):
        await services.store.append("u1_u2", make_message("m1"))

        assert await services.store.update_status("u1_u2", "m1", DeliveryStatus.SEEN) is True
        assert await services.store.update_status("u1_u2", "m1", DeliveryStatus.DELIVERED) is False
        assert await services.store.update_status("u1_u2", "m1", DeliveryStatus.SEEN) is True

        [stored] = await services.store.list_messages("u1_u2")
        assert stored.status == DeliveryStatus.SEEN


class TestLocalCache:
    """Tests for the per-conversation offline snapshot."""

    @pytest.mark.asyncio
    async def test_load_returns_saved_snapshot_in_order(self, services):
        messages = [make_message("b", minutes=5), make_message("a", minutes=1), make_message("c", minutes=9)]
        await services.cache.save("u1_u2", messages)

        assert await services.cache.load("u1_u2") == messages

    @pytest.mark.asyncio
    async def test_save_replaces_wholesale(self, services):
        await services.cache.save("u1_u2", [make_message("a"), make_message("b", minutes=1)])
        await services.cache.save("u1_u2", [make_message("c", minutes=2)])

        assert [m.id for m in await services.cache.load("u1_u2")] == ["c"]

    @pytest.mark.asyncio
    async def test_load_missing_is_empty(self, services):
        assert await services.cache.load("nobody_here") == []

    @pytest.mark.asyncio
    async def test_load_corrupt_entry_is_empty(self, services):
        services.cache._put_sync(cache_key("u1_u2"), "{not json")
        assert await services.cache.load("u1_u2") == []

    @pytest.mark.asyncio
    async def test_save_keeps_most_recent(self, services):
        cache = LocalCache(services.cache_db, max_messages=2)
        await cache.save("u1_u2", [make_message(f"m{i}", minutes=i) for i in range(5)])

        assert [m.id for m in await cache.load("u1_u2")] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_upsert_replaces_same_id(self, services):
        await services.cache.save("u1_u2", [make_message("a"), make_message("b", minutes=1)])
        await services.cache.upsert("u1_u2", make_message("a", text="again", status=DeliveryStatus.DELIVERED))

        cached = await services.cache.load("u1_u2")
        assert [(m.id, m.text) for m in cached] == [("a", "again"), ("b", "hello")]

    def test_cache_key_is_namespaced(self):
        assert cache_key("u1_u2") == "chat_u1_u2"


class TestDeliveryTracker:
    """Tests for best-effort status transitions."""

    @pytest.mark.asyncio
    async def test_failed_update_retried_once_then_abandoned(self, services, monkeypatch):
        await services.store.append("u1_u2", make_message("m1"))
        calls = []

        async def broken(conversation_id, message_id, status):
            calls.append(status)
            raise StoreUnavailableError("down")

        monkeypatch.setattr(services.store, "update_status", broken)

        assert await services.tracker.mark_delivered("u1_u2", "m1") is False
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retry_recovers(self, services, monkeypatch):
        await services.store.append("u1_u2", make_message("m1"))
        real_update = services.store.update_status
        attempts = []

        async def flaky(conversation_id, message_id, status):
            attempts.append(status)
            if len(attempts) == 1:
                raise StoreUnavailableError("blip")
            return await real_update(conversation_id, message_id, status)

        monkeypatch.setattr(services.store, "update_status", flaky)

        assert await services.tracker.mark_delivered("u1_u2", "m1") is True
        [stored] = await services.store.list_messages("u1_u2")
        assert stored.status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_message_is_not_an_error(self, services):
        assert await services.tracker.mark_seen("u1_u2", "missing") is False

    @pytest.mark.asyncio
    async def test_mark_seen_is_idempotent(self, services):
        await services.store.append("u1_u2", make_message("m1"))
        assert await services.tracker.mark_seen("u1_u2", "m1") is True
        assert await services.tracker.mark_seen("u1_u2", "m1") is True


class TestProfiles:
    """Tests for sign-in profile sync."""

    @pytest.mark.asyncio
    async def test_first_sign_in_creates_profile(self, services):
        profile = await sign_in(services, "u1", "Ana", token="tok-1")
        assert profile.fcm_token == "tok-1"
        assert profile.last_seen is not None
        assert await services.profiles.get_push_token("u1") == "tok-1"

    @pytest.mark.asyncio
    async def test_sign_in_without_token_clears_it(self, services):
        await sign_in(services, "u1", "Ana", token="tok-1")
        await sign_in(services, "u1", "Ana", token=None)
        assert await services.profiles.get_push_token("u1") is None

    @pytest.mark.asyncio
    async def test_duplicate_display_name_rejected(self, services):
        await sign_in(services, "u1", "Ana")
        with pytest.raises(DuplicateNameError):
            await sign_in(services, "u2", "Ana")


class TestChatService:
    """Tests for send orchestration and live streams."""

    @pytest.mark.asyncio
    async def test_empty_message_rejected_before_write(self, services):
        with pytest.raises(EmptyMessageError):
            await services.chat.send("u1", "u1", "u2", text="   ")
        assert await services.store.list_messages("u1_u2") == []

    @pytest.mark.asyncio
    async def test_identity_mismatch_rejected_before_write(self, services):
        with pytest.raises(IdentityMismatchError):
            await services.chat.send("u2", "u1", "u2", text="hi")
        with pytest.raises(IdentityMismatchError):
            await services.chat.send(None, "u1", "u2", text="hi")
        assert await services.store.list_messages("u1_u2") == []

    @pytest.mark.asyncio
    async def test_wrong_conversation_rejected(self, services):
        with pytest.raises(InvalidConversationError):
            await services.chat.send("u1", "u1", "u2", text="hi", expected_conversation_id="u1_u3")

    @pytest.mark.asyncio
    async def test_send_stores_one_message_that_becomes_delivered(self, services):
        message = await services.chat.send("u1", "u1", "u2", text="  hi  ")
        assert message.status == DeliveryStatus.SENT
        assert message.text == "hi"

        await services.chat.drain()

        stored = await services.store.list_messages("u1_u2")
        assert [(m.id, m.status) for m in stored] == [(message.id, DeliveryStatus.DELIVERED)]
        cached = await services.cache.load("u1_u2")
        assert [(m.id, m.status) for m in cached] == [(message.id, DeliveryStatus.DELIVERED)]

    @pytest.mark.asyncio
    async def test_store_failure_is_fatal(self, services, monkeypatch):
        async def down(conversation_id, message):
            raise StoreUnavailableError("down")

        monkeypatch.setattr(services.store, "append", down)
        with pytest.raises(StoreUnavailableError):
            await services.chat.send("u1", "u1", "u2", text="hi")

    @pytest.mark.asyncio
    async def test_notification_sent_to_receiver_token(self, services, push_backend):
        await sign_in(services, "u2", "Bo", token="device-u2")

        await services.chat.send("u1", "u1", "u2", text="hi")
        await services.chat.drain()

        [payload] = push_backend.sent_payloads()
        assert payload["message"]["token"] == "device-u2"
        assert payload["message"]["notification"] == {"title": "New Message", "body": "hi"}

    @pytest.mark.asyncio
    async def test_image_send_uploads_and_uses_placeholder_body(self, services, push_backend):
        await sign_in(services, "u2", "Bo", token="device-u2")

        message = await services.chat.send("u1", "u1", "u2", image=b"\x89PNG...", image_extension="png")
        await services.chat.drain()

        assert message.text is None
        assert message.image_url.startswith("http://testserver/files/chat_images/u1_u2/")
        assert message.image_url.endswith(".png")
        relative = message.image_url.replace("http://testserver/files/", "")
        assert (services.storage.root / relative).read_bytes() == b"\x89PNG..."

        [payload] = push_backend.sent_payloads()
        assert payload["message"]["notification"]["body"] == "📷 You received an image"

    @pytest.mark.asyncio
    async def test_upload_failure_aborts_send(self, services, monkeypatch):
        async def failing_upload(conversation_id, data, extension="jpg"):
            raise UploadError("bucket gone")

        monkeypatch.setattr(services.storage, "upload", failing_upload)
        with pytest.raises(UploadError):
            await services.chat.send("u1", "u1", "u2", image=b"data")
        assert await services.store.list_messages("u1_u2") == []

    @pytest.mark.asyncio
    async def test_two_participants_conversation(self, services):
        await services.chat.send("u1", "u1", "u2", text="hi")
        await services.chat.send("u2", "u2", "u1", text="hello")
        await services.chat.drain()

        messages, source = await services.chat.history("u1", "u1_u2")
        assert source == "store"
        assert [m.text for m in messages] == ["hi", "hello"]
        assert {m.conversation_id for m in messages} == {"u1_u2"}

    @pytest.mark.asyncio
    async def test_history_falls_back_to_cache(self, services, monkeypatch):
        cached = [make_message("a")]
        await services.cache.save("u1_u2", cached)

        async def down(conversation_id):
            raise StoreUnavailableError("down")

        monkeypatch.setattr(services.store, "list_messages", down)
        assert await services.chat.history("u1", "u1_u2") == (cached, "cache")

    @pytest.mark.asyncio
    async def test_stream_caches_each_snapshot(self, services):
        stream = services.chat.stream("u1", "u1_u2")
        assert await stream.__anext__() == []

        await services.store.append("u1_u2", make_message("m1"))
        snapshot = await asyncio.wait_for(stream.__anext__(), timeout=2)
        await stream.aclose()

        assert [m.id for m in snapshot] == ["m1"]
        assert [m.id for m in await services.cache.load("u1_u2")] == ["m1"]

    @pytest.mark.asyncio
    async def test_stream_serves_cache_then_resubscribes(self, services, monkeypatch):
        cached = [make_message("old")]
        await services.cache.save("u1_u2", cached)
        real_subscribe = services.store.subscribe
        opened = []

        def flaky_subscribe(conversation_id):
            opened.append(conversation_id)
            if len(opened) == 1:
                return self._failing_subscription()
            return real_subscribe(conversation_id)

        monkeypatch.setattr(services.store, "subscribe", flaky_subscribe)

        stream = services.chat.stream("u1", "u1_u2")
        assert await stream.__anext__() == cached
        assert await asyncio.wait_for(stream.__anext__(), timeout=2) == []
        await stream.aclose()
        assert len(opened) == 2

    @staticmethod
    async def _failing_subscription():
        raise StoreUnavailableError("disconnected")
        yield

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_conversation(self, services):
        await services.chat.send("u1", "u1", "u2", text="secret")
        await services.chat.drain()

        with pytest.raises(ForbiddenConversationError):
            await services.chat.history("u3", "u1_u2")
        with pytest.raises(ForbiddenConversationError):
            await services.chat.cached("u3", "u1_u2")
        with pytest.raises(ForbiddenConversationError):
            await services.chat.stream("u3", "u1_u2").__anext__()
        assert services.store.watcher_count("u1_u2") == 0

    @pytest.mark.asyncio
    async def test_only_recipient_marks_seen(self, services):
        message = await services.chat.send("u1", "u1", "u2", text="hi")
        await services.chat.drain()

        with pytest.raises(ForbiddenConversationError):
            await services.chat.mark_seen("u1", "u1_u2", message.id)
        with pytest.raises(ForbiddenConversationError):
            await services.chat.mark_seen("u3", "u1_u2", message.id)
        [stored] = await services.store.list_messages("u1_u2")
        assert stored.status == DeliveryStatus.DELIVERED

        assert await services.chat.mark_seen("u2", "u1_u2", message.id) is True
        [stored] = await services.store.list_messages("u1_u2")
        assert stored.status == DeliveryStatus.SEEN

    @pytest.mark.asyncio
    async def test_cache_write_failure_does_not_break_send_or_stream(self, services, monkeypatch):
        def broken_put(key, value):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(services.cache, "_put_sync", broken_put)

        message = await services.chat.send("u1", "u1", "u2", text="hi")
        await services.chat.drain()

        [stored] = await services.store.list_messages("u1_u2")
        assert (stored.id, stored.status) == (message.id, DeliveryStatus.DELIVERED)

        stream = services.chat.stream("u1", "u1_u2")
        snapshot = await asyncio.wait_for(stream.__anext__(), timeout=2)
        await stream.aclose()
        assert [m.id for m in snapshot] == [message.id]
        assert await services.cache.load("u1_u2") == []

    @pytest.mark.asyncio
    async def test_send_succeeds_when_delivered_marker_keeps_failing(self, services, monkeypatch):
        attempts = []

        async def broken(conversation_id, message_id, status):
            attempts.append(status)
            raise StoreUnavailableError("down")

        monkeypatch.setattr(services.store, "update_status", broken)

        message = await services.chat.send("u1", "u1", "u2", text="hi")
        await services.chat.drain()

        assert message.status == DeliveryStatus.SENT
        assert attempts == [DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED]
        [stored] = await services.store.list_messages("u1_u2")
        assert stored.status == DeliveryStatus.SENT
        [cached] = await services.cache.load("u1_u2")
        assert cached.status == DeliveryStatus.SENT
