"""Tests for chat persistence"""

import pytest

from fakes import FailingStore
from src.conversation.chat_store import ChatStore
from src.errors import ChatNotFound, StoreUnavailable
from src.models.conversation import Chat, Message


def transcript(*pairs) -> list:
    return [Message(id=mid, role=role, content=content) for mid, role, content in pairs]


@pytest.mark.asyncio
async def test_save_new_chat(store):
    """A new chat is inserted with title and path"""
    chats = ChatStore(store)
    await chats.setup()
    messages = transcript(("u1", "user", "What causes chest pain?"), ("a1", "assistant", "Many things."))

    await chats.save_chat(chats.build_chat("chat-1", "user-1", messages))

    chat = await chats.get_chat("chat-1")
    assert chat.title == "What causes chest pain?"
    assert chat.path == "/chat/chat-1"
    assert chat.user_id == "user-1"
    assert [m.id for m in chat.messages] == ["u1", "a1"]
    assert all(m.metadata.timestamp is not None for m in chat.messages)


@pytest.mark.asyncio
async def test_save_existing_chat_pushes_only_new_messages(store):
    """Upsert appends unseen ids and leaves stored messages alone"""
    chats = ChatStore(store)
    first = transcript(("u1", "user", "What is asthma?"), ("a1", "assistant", "A condition."))
    await chats.save_chat(chats.build_chat("chat-1", "user-1", first))

    second = first + transcript(("u2", "user", "How is it treated?"), ("a2", "assistant", "Inhalers."))
    await chats.save_chat(chats.build_chat("chat-1", "user-1", second))
    await chats.save_chat(chats.build_chat("chat-1", "user-1", second))

    raw = await store.find_one("chats", {"id": "chat-1"})
    assert [m["id"] for m in raw["messages"]] == ["u1", "a1", "u2", "a2"]
    assert raw["title"] == "What is asthma?"


@pytest.mark.asyncio
async def test_get_chats_newest_first(store):
    chats = ChatStore(store)
    for chat_id, created in [("old", "2024-01-01T00:00:00+00:00"), ("new", "2024-02-01T00:00:00+00:00")]:
        await store.insert_one("chats", {
            "id": chat_id,
            "userId": "user-1",
            "title": chat_id,
            "createdAt": created,
            "updatedAt": created,
            "messages": [],
        })
    await store.insert_one("chats", {"id": "other", "userId": "user-2", "messages": []})

    result = await chats.get_chats("user-1")

    assert [c.id for c in result] == ["new", "old"]


@pytest.mark.asyncio
async def test_reads_consolidate_raw_fragments(store):
    """Fragments written by older clients are folded on read"""
    chats = ChatStore(store)
    await store.insert_one("chats", {
        "id": "chat-1",
        "userId": "user-1",
        "messages": [
            {"id": "u1", "role": "user", "content": "Hi"},
            {"id": "a1", "role": "assistant", "content": "Hel"},
            {"id": "a2", "role": "assistant", "content": "Hello"},
        ],
    })

    chat = await chats.get_chat("chat-1")

    assert [m.content for m in chat.messages] == ["Hi", "Hello"]


@pytest.mark.asyncio
async def test_get_chat_checks_owner(store):
    chats = ChatStore(store)
    await chats.save_chat(chats.build_chat("chat-1", "user-1", transcript(("u1", "user", "Hi"))))

    assert await chats.get_chat("chat-1", "user-1") is not None
    assert await chats.get_chat("chat-1", "user-2") is None
    assert await chats.get_chat("missing") is None


@pytest.mark.asyncio
async def test_shared_chat_requires_share_path(store):
    chats = ChatStore(store)
    messages = transcript(("u1", "user", "Hi"))
    await chats.save_chat(chats.build_chat("private", "user-1", messages))
    await chats.save_chat(chats.build_chat("shared", "user-1", messages, share_path="/share/shared"))

    assert await chats.get_shared_chat("private") is None
    shared = await chats.get_shared_chat("shared")
    assert shared.share_path == "/share/shared"


@pytest.mark.asyncio
async def test_remove_and_clear(store):
    chats = ChatStore(store)
    messages = transcript(("u1", "user", "Hi"))
    for chat_id in ("a", "b", "c"):
        await chats.save_chat(chats.build_chat(chat_id, "user-1", messages))

    assert not await chats.remove_chat("a", "user-2")
    assert await chats.remove_chat("a", "user-1")
    assert await chats.get_chat("a") is None

    assert await chats.clear_chats("user-1") == 2
    assert await chats.get_chats("user-1") == []


@pytest.mark.asyncio
async def test_cleanup_existing_chats(store):
    """Cleanup rewrites stored transcripts in consolidated form"""
    chats = ChatStore(store)
    await store.insert_one("chats", {
        "id": "chat-1",
        "userId": "user-1",
        "messages": [
            {"id": "a1", "role": "assistant", "content": "Hel"},
            {"id": "a2", "role": "assistant", "content": "Hello"},
            {"id": "u1", "role": "user", "content": "", "attachments": [{"type": "file", "data": "aGk="}]},
        ],
    })

    assert await chats.cleanup_existing_chats() == 1

    raw = await store.find_one("chats", {"id": "chat-1"})
    assert [m["id"] for m in raw["messages"]] == ["a2", "u1"]
    assert raw["messages"][1]["attachments"][0] == {"type": "image", "data": "aGk=", "mimeType": "image/jpeg"}


@pytest.mark.asyncio
async def test_store_errors_propagate():
    chats = ChatStore(FailingStore())
    await chats.setup()

    with pytest.raises(StoreUnavailable):
        await chats.get_chats("user-1")


def test_title_is_truncated():
    long_text = "x" * 150
    assert Chat.title_for([Message(role="user", content=long_text)]) == "x" * 100
    assert Chat.title_for([]) == ""


@pytest.mark.asyncio
async def test_save_refuses_another_users_chat(store):
    """Saving under a foreign chat id leaves the owner's record untouched"""
    chats = ChatStore(store)
    await chats.save_chat(chats.build_chat("chat-1", "owner", transcript(("u1", "user", "What is asthma?"))))

    intruder = chats.build_chat("chat-1", "intruder", transcript(("x1", "user", "Tell me about gout")))
    with pytest.raises(ChatNotFound):
        await chats.save_chat(intruder)

    raw = await store.find_one("chats", {"id": "chat-1"})
    assert raw["userId"] == "owner"
    assert raw["title"] == "What is asthma?"
    assert [m["id"] for m in raw["messages"]] == ["u1"]


@pytest.mark.asyncio
async def test_title_survives_later_saves(store):
    """A later save with a different first message keeps the stored title"""
    chats = ChatStore(store)
    await chats.save_chat(chats.build_chat("chat-1", "user-1", transcript(("u1", "user", "What is asthma?"))))

    await chats.save_chat(chats.build_chat("chat-1", "user-1", transcript(("u2", "user", "What is gout?"))))

    raw = await store.find_one("chats", {"id": "chat-1"})
    assert raw["title"] == "What is asthma?"
    assert [m["id"] for m in raw["messages"]] == ["u1", "u2"]
