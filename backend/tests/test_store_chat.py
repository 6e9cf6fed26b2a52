import asyncio
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicehub.config import Settings
from servicehub.errors import WriteError
from servicehub.gateway.sqlite_gateway import SqliteBackend, SqliteGateway
from servicehub.models import Message
from servicehub.store.chat import CONVERSATIONS, MESSAGES, ChatContainer, pair_key


def _ticking_clock():
    start = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


def _settings(tmp_path, **overrides):
    return Settings(db_path=str(tmp_path / "hub.sqlite3"), blob_dir=str(tmp_path / "blobs"), **overrides)


def _chat(tmp_path, backend=None, **overrides):
    settings = _settings(tmp_path, **overrides)
    backend = backend or SqliteBackend(db_path=settings.db_path, blob_dir=settings.blob_dir)
    return ChatContainer(SqliteGateway(backend), settings, clock=_ticking_clock())


class _BlindQueryGateway(SqliteGateway):
    """Never sees existing conversations, so every caller falls through to the create path."""

    async def query(self, collection, filters=(), order_by=None, descending=False):
        if collection == CONVERSATIONS:
            await asyncio.sleep(0)
            return []
        return await super().query(collection, filters, order_by, descending)


class _HeldReadsGateway(SqliteGateway):
    def __init__(self, backend):
        super().__init__(backend)
        self.release = None

    async def query(self, *args, **kwargs):
        await self.release.wait()
        return await super().query(*args, **kwargs)


class _BrokenMessageWritesGateway(SqliteGateway):
    async def add_document(self, collection, data):
        raise WriteError(f"Create {collection}/x failed: disk I/O error")


def test_pair_key_is_order_independent():
    assert pair_key("alice", "bob") == pair_key("bob", "alice") == "alice__bob"


def test_get_or_create_twice_returns_same_conversation(tmp_path):
    chat = _chat(tmp_path)

    async def scenario():
        first = await chat.get_or_create_conversation("alice", "bob")
        second = await chat.get_or_create_conversation("alice", "bob")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.ok and second.ok
    assert first.payload.id == second.payload.id
    assert first.payload.participants == ["alice", "bob"]
    assert first.payload.unread_count == 0
    assert [item.id for item in chat.state.conversations] == [first.payload.id]
    assert chat.state.current_conversation.id == first.payload.id


def test_concurrent_get_or_create_converges_on_one_conversation(tmp_path):
    settings = _settings(tmp_path)
    backend = SqliteBackend(db_path=settings.db_path, blob_dir=settings.blob_dir)
    alice = ChatContainer(_BlindQueryGateway(backend), settings)
    bob = ChatContainer(_BlindQueryGateway(backend), settings)

    async def scenario():
        return await asyncio.gather(
            alice.get_or_create_conversation("alice", "bob"),
            bob.get_or_create_conversation("bob", "alice"),
        )

    from_alice, from_bob = asyncio.run(scenario())

    assert from_alice.ok and from_bob.ok
    assert from_alice.payload.id == from_bob.payload.id == "alice__bob"
    stored = backend.query(CONVERSATIONS, [], None, False)
    assert len(stored) == 1


def test_self_conversation_is_rejected(tmp_path):
    chat = _chat(tmp_path)

    settlement = asyncio.run(chat.get_or_create_conversation("alice", "alice"))

    assert settlement.status == "rejected"
    assert settlement.error == "Cannot start a conversation with yourself"
    assert chat.state.conversations == []


def _send_two(chat):
    async def scenario():
        opened = await chat.get_or_create_conversation("alice", "bob")
        conversation_id = opened.payload.id
        await chat.send_message(conversation_id, "alice", "bob", "Hi Bob")
        return await chat.send_message(conversation_id, "alice", "bob", "Are you free on Friday?")

    return asyncio.run(scenario())


def test_unread_counter_increments(tmp_path):
    chat = _chat(tmp_path)

    settlement = _send_two(chat)

    assert settlement.ok
    assert settlement.payload.conversation.unread_count == 2
    assert settlement.payload.conversation.last_message == "Are you free on Friday?"
    assert chat.state.current_conversation.unread_count == 2
    assert [item.content for item in chat.state.messages] == ["Hi Bob", "Are you free on Friday?"]


def test_unread_counter_literal_mode_stays_at_one(tmp_path):
    chat = _chat(tmp_path, unread_counter_mode="literal")

    settlement = _send_two(chat)

    assert settlement.ok
    assert settlement.payload.conversation.unread_count == 1


def test_blank_message_is_rejected(tmp_path):
    chat = _chat(tmp_path)

    settlement = asyncio.run(chat.send_message("alice__bob", "alice", "bob", "   "))

    assert settlement.status == "rejected"
    assert settlement.error == "Message content is required"


def test_mark_read_flips_receiver_messages_and_zeroes_counter(tmp_path):
    settings = _settings(tmp_path)
    backend = SqliteBackend(db_path=settings.db_path, blob_dir=settings.blob_dir)
    alice = ChatContainer(SqliteGateway(backend), settings, clock=_ticking_clock())
    bob = ChatContainer(SqliteGateway(backend), settings, clock=_ticking_clock())

    async def scenario():
        opened = await alice.get_or_create_conversation("alice", "bob")
        conversation_id = opened.payload.id
        await alice.send_message(conversation_id, "alice", "bob", "Hi Bob")
        await alice.send_message(conversation_id, "alice", "bob", "Still there?")
        await bob.get_or_create_conversation("bob", "alice")
        await bob.list_messages(conversation_id)
        await bob.send_message(conversation_id, "bob", "alice", "Yes!")
        marked = await bob.mark_read(conversation_id, "bob")
        return conversation_id, marked

    conversation_id, marked = asyncio.run(scenario())

    assert marked.ok
    assert {item.content for item in marked.payload} == {"Hi Bob", "Still there?"}
    read_flags = {item.content: item.is_read for item in bob.state.messages}
    assert read_flags == {"Hi Bob": True, "Still there?": True, "Yes!": False}
    assert bob.state.current_conversation.unread_count == 0
    assert backend.get_document(CONVERSATIONS, conversation_id)["unreadCount"] == 0


def test_list_conversations_newest_first(tmp_path):
    chat = _chat(tmp_path)

    async def scenario():
        with_bob = await chat.get_or_create_conversation("alice", "bob")
        await chat.get_or_create_conversation("alice", "carol")
        await chat.send_message(with_bob.payload.id, "alice", "bob", "Ping")
        return await chat.list_conversations("alice")

    settlement = asyncio.run(scenario())

    assert [item.id for item in settlement.payload] == ["alice__bob", "alice__carol"]


def test_local_reducers(tmp_path):
    chat = _chat(tmp_path)
    asyncio.run(chat.get_or_create_conversation("alice", "bob"))
    message = Message(
        id="m1",
        conversation_id="alice__bob",
        sender_id="bob",
        receiver_id="alice",
        content="pushed",
        timestamp=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )

    chat.add_message(message)
    assert chat.state.messages == [message]

    chat.clear_current_conversation()
    assert chat.state.current_conversation is None
    assert chat.state.messages == []

    chat.set_current_conversation(chat.state.conversations[0])
    assert chat.state.current_conversation.id == "alice__bob"


def test_list_conversations_is_pending_before_it_settles(tmp_path):
    settings = _settings(tmp_path)
    gateway = _HeldReadsGateway(SqliteBackend(db_path=settings.db_path, blob_dir=settings.blob_dir))
    chat = ChatContainer(gateway, settings, clock=_ticking_clock())

    async def scenario():
        gateway.release = asyncio.Event()
        chat._replace(error="stale failure")
        task = asyncio.create_task(chat.list_conversations("alice"))
        await asyncio.sleep(0)
        pending = chat.state
        gateway.release.set()
        return pending, await task

    pending, settled = asyncio.run(scenario())

    assert pending.is_loading is True
    assert pending.error is None
    assert settled.ok
    assert chat.state.conversations == []
    assert chat.state.is_loading is False


def test_rejected_send_leaves_thread_untouched(tmp_path):
    settings = _settings(tmp_path)
    backend = SqliteBackend(db_path=settings.db_path, blob_dir=settings.blob_dir)
    healthy = _chat(tmp_path, backend)
    conversation = asyncio.run(healthy.get_or_create_conversation("alice", "bob")).payload

    broken = ChatContainer(_BrokenMessageWritesGateway(backend), settings, clock=_ticking_clock())
    broken._replace(conversations=[conversation], current_conversation=conversation)
    settlement = asyncio.run(broken.send_message(conversation.id, "alice", "bob", "Hi Bob"))

    assert settlement.status == "rejected"
    assert settlement.error_type == "WriteError"
    assert broken.state.error == "Create messages/x failed: disk I/O error"
    assert broken.state.messages == []
    assert broken.state.conversations == [conversation]
    assert broken.state.current_conversation == conversation
    assert broken.state.is_loading is False
    assert backend.query(MESSAGES, [], None, False) == []
    stored = backend.get_document(CONVERSATIONS, conversation.id)
    assert stored["unreadCount"] == 0
    assert stored["lastMessage"] == ""
