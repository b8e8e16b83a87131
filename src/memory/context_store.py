"""Per-conversation topic context"""

import logging
import threading
from collections import OrderedDict
from typing import Any, Optional

from src.models.conversation import ConversationContext, utc_now

logger = logging.getLogger(__name__)


class ContextStore:
    """
    Bounded in-memory map of chat id -> ConversationContext

    Contexts are ephemeral: nothing is persisted and a restart starts
    every conversation without a topic. The map is an LRU capped at
    ``capacity`` chats; reads refresh recency.

    Each operation holds a lock, so concurrent turns on different chats
    never see a half-written map. Two writes to the same chat resolve as
    last-write-wins.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._contexts: "OrderedDict[str, ConversationContext]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, chat_id: str) -> Optional[ConversationContext]:
        with self._lock:
            context = self._contexts.get(chat_id)
            if context is not None:
                self._contexts.move_to_end(chat_id)
            return context

    def set(self, chat_id: str, context: ConversationContext) -> ConversationContext:
        """Replace the context for chat_id"""
        stored = context.model_copy(update={"timestamp": utc_now()})
        with self._lock:
            self._contexts[chat_id] = stored
            self._contexts.move_to_end(chat_id)
            while len(self._contexts) > self.capacity:
                evicted, _ = self._contexts.popitem(last=False)
                logger.debug("Evicted context for chat %s", evicted)
        return stored

    def update(self, chat_id: str, **changes: Any) -> Optional[ConversationContext]:
        """Merge changes into an existing context; no-op when absent"""
        with self._lock:
            existing = self._contexts.get(chat_id)
            if existing is None:
                return None
            updated = existing.model_copy(update={**changes, "timestamp": utc_now()})
            self._contexts[chat_id] = updated
            self._contexts.move_to_end(chat_id)
            return updated

    def clear(self, chat_id: str) -> None:
        with self._lock:
            self._contexts.pop(chat_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def __contains__(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._contexts
