"""Chat persistence"""

import logging
from typing import List, Optional

from src.conversation.consolidator import consolidate_messages, process_message
from src.errors import ChatNotFound, StoreUnavailable
from src.models.conversation import Chat, Message, utc_now
from src.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)


class ChatStore:
    """Read and write conversation records"""

    collection = "chats"

    def __init__(self, store: DocumentStore):
        self.store = store

    async def setup(self):
        """Declare indexes"""
        try:
            await self.store.create_index(self.collection, "id", unique=True)
            await self.store.create_index(self.collection, "userId")
            await self.store.create_index(self.collection, "createdAt")
        except StoreUnavailable as e:
            logger.warning("Could not create chat indexes: %s", e)

    @staticmethod
    def _load(document: dict) -> Chat:
        chat = Chat.model_validate(document)
        chat.messages = consolidate_messages(chat.messages)
        return chat

    async def get_chats(self, user_id: str) -> List[Chat]:
        """All chats for a user, newest first"""
        documents = await self.store.find(
            self.collection,
            {"userId": user_id},
            sort=[("createdAt", -1)],
        )
        return [self._load(doc) for doc in documents]

    async def get_chat(self, chat_id: str, user_id: Optional[str] = None) -> Optional[Chat]:
        """Chat by id; when user_id is given the chat must belong to it"""
        document = await self.store.find_one(self.collection, {"id": chat_id})
        if document is None:
            return None

        chat = self._load(document)
        if user_id is not None and chat.user_id != user_id:
            return None
        return chat

    async def get_shared_chat(self, chat_id: str) -> Optional[Chat]:
        """Chat by id, only if it has already been shared"""
        document = await self.store.find_one(self.collection, {"id": chat_id})
        if document is None or not document.get("sharePath"):
            return None
        return self._load(document)

    async def save_chat(self, chat: Chat) -> None:
        """
        Upsert a chat

        Messages are normalised and consolidated first. For an existing
        record only messages whose id is not stored yet are appended and
        the stored title is kept; a new record is inserted whole.

        Raises ChatNotFound when the existing record belongs to another user.
        """
        now = utc_now()
        consolidated = consolidate_messages(
            [process_message(m, now) for m in chat.messages],
            now,
        )

        existing = await self.store.find_one(self.collection, {"id": chat.id})
        if existing is not None:
            if existing.get("userId") != chat.user_id:
                raise ChatNotFound(f"Chat {chat.id} not found")

            stored_ids = {m.get("id") for m in existing.get("messages", [])}
            new_messages = [m for m in consolidated if m.id not in stored_ids]
            if not new_messages:
                return

            # Title is fixed by the first save
            fields = {
                "path": chat.path,
                "updatedAt": now.isoformat(),
            }
            if not existing.get("title"):
                fields["title"] = chat.title
            if chat.share_path:
                fields["sharePath"] = chat.share_path

            await self.store.update_one(
                self.collection,
                {"id": chat.id},
                set=fields,
                push_each={"messages": [m.to_document() for m in new_messages]},
            )
            logger.debug("Appended %d messages to chat %s", len(new_messages), chat.id)
            return

        record = chat.model_copy(update={
            "messages": consolidated,
            "created_at": now,
            "updated_at": now,
        })
        await self.store.insert_one(self.collection, record.to_document())
        logger.debug("Created chat %s with %d messages", chat.id, len(consolidated))

    async def remove_chat(self, chat_id: str, user_id: str) -> bool:
        """Delete a chat owned by user_id"""
        chat = await self.store.find_one(self.collection, {"id": chat_id})
        if chat is None or chat.get("userId") != user_id:
            return False
        return await self.store.delete_one(self.collection, {"id": chat_id})

    async def clear_chats(self, user_id: str) -> int:
        return await self.store.delete_many(self.collection, {"userId": user_id})

    async def cleanup_existing_chats(self) -> int:
        """Re-consolidate every stored chat in place"""
        documents = await self.store.find(self.collection, {})
        now = utc_now()
        for document in documents:
            chat = Chat.model_validate(document)
            messages = consolidate_messages([process_message(m, now) for m in chat.messages], now)
            await self.store.update_one(
                self.collection,
                {"id": chat.id},
                set={
                    "messages": [m.to_document() for m in messages],
                    "updatedAt": now.isoformat(),
                },
            )
        logger.info("Cleaned up %d chats", len(documents))
        return len(documents)

    def build_chat(self, chat_id: str, user_id: str, messages: List[Message], share_path: Optional[str] = None) -> Chat:
        """Conversation record for a transcript"""
        return Chat(
            id=chat_id,
            title=Chat.title_for(messages),
            user_id=user_id,
            path=Chat.path_for(chat_id),
            share_path=share_path,
            messages=list(messages),
        )
