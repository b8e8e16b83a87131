"""Tests for the conversation context store"""

import threading

import pytest

from src.conversation.analyzer import should_update_context
from src.memory.context_store import ContextStore
from src.models.conversation import ConversationContext


def test_set_and_get():
    """Stored context is returned with a fresh timestamp"""
    store = ContextStore()
    context = ConversationContext(current_topic="What causes chest pain?", last_message_id="m1")

    stored = store.set("chat-1", context)

    assert store.get("chat-1") == stored
    assert stored.current_topic == "What causes chest pain?"
    assert "chat-1" in store
    assert store.get("chat-2") is None


def test_update_merges_fields():
    """update keeps untouched fields"""
    store = ContextStore()
    store.set("chat-1", ConversationContext(current_topic="migraines", last_message_id="m1"))

    updated = store.update("chat-1", related_messages=["m2"])

    assert updated.current_topic == "migraines"
    assert updated.related_messages == ["m2"]
    assert store.get("chat-1").related_messages == ["m2"]


def test_update_missing_is_noop():
    """update on an unknown chat creates nothing"""
    store = ContextStore()

    assert store.update("chat-1", current_topic="x") is None
    assert "chat-1" not in store
    assert len(store) == 0


def test_self_contained_message_replaces_context():
    """A message without pronouns replaces the topic wholesale"""
    store = ContextStore()
    store.set(
        "chat-1",
        ConversationContext(current_topic="chest pain", last_message_id="m1", related_messages=["m2"]),
    )

    message = "What about skin rashes?"
    assert should_update_context(message, store.get("chat-1"))
    store.set("chat-1", ConversationContext(current_topic=message, last_message_id="m3"))

    context = store.get("chat-1")
    assert context.current_topic == "What about skin rashes?"
    assert context.last_message_id == "m3"
    assert context.related_messages == []


def test_clear():
    store = ContextStore()
    store.set("chat-1", ConversationContext(current_topic="asthma"))

    store.clear("chat-1")
    store.clear("chat-1")

    assert store.get("chat-1") is None


def test_lru_eviction():
    """Least recently used chat is dropped at capacity"""
    store = ContextStore(capacity=2)
    store.set("a", ConversationContext(current_topic="a"))
    store.set("b", ConversationContext(current_topic="b"))

    # Reading "a" makes "b" the oldest
    store.get("a")
    store.set("c", ConversationContext(current_topic="c"))

    assert len(store) == 2
    assert "a" in store
    assert "b" not in store
    assert "c" in store


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ContextStore(capacity=0)


def test_concurrent_writes_to_different_chats():
    """Parallel writers never corrupt the map"""
    store = ContextStore(capacity=1000)

    def writer(prefix: str):
        for i in range(200):
            store.set(f"{prefix}-{i}", ConversationContext(current_topic=prefix))
            store.update(f"{prefix}-{i}", related_messages=[str(i)])

    threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store) == 800
    assert store.get("t3-199").related_messages == ["199"]
