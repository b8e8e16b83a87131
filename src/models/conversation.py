"""Conversation, message and context models"""

from datetime import datetime, timezone
from typing import Optional, List, Literal
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid4().hex


class CamelModel(BaseModel):
    """Base for persisted documents (camelCase on the wire)"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


Role = Literal["user", "assistant", "system"]
MessageType = Literal["text", "image_analysis", "image_analysis_response"]

METADATA_VERSION = 1


class MessageAttachment(CamelModel):
    """Binary payload attached to a message (base64, no data-URL prefix)"""
    type: str = "image"
    data: str
    mime_type: Optional[str] = None
    analysis_id: Optional[str] = None


class MessageMetadata(CamelModel):
    """Closed set of per-message metadata fields"""
    version: int = METADATA_VERSION
    timestamp: Optional[datetime] = None
    is_follow_up: Optional[bool] = None
    topic: Optional[str] = None
    message_type: Optional[MessageType] = None
    is_emergency: Optional[bool] = None
    is_emergency_response: Optional[bool] = None
    related_to_image: Optional[str] = None


class Message(CamelModel):
    """Single transcript entry"""
    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    attachments: Optional[List[MessageAttachment]] = None
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


class Chat(CamelModel):
    """Persisted conversation record"""
    id: str
    title: str = ""
    user_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    path: str = ""
    share_path: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)

    @staticmethod
    def path_for(chat_id: str) -> str:
        return f"/chat/{chat_id}"

    @staticmethod
    def title_for(messages: List[Message]) -> str:
        if not messages:
            return ""
        return messages[0].content[:100]


class ConversationContext(BaseModel):
    """Ephemeral topic state for one chat"""
    current_topic: Optional[str] = None
    last_message_id: Optional[str] = None
    related_messages: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
