"""Pydantic models for API requests and responses"""

from typing import Optional, List
from pydantic import BaseModel, Field

from src.models.conversation import Message, MessageAttachment


class SendMessageRequest(BaseModel):
    """One user turn"""
    content: str = Field("", description="Message text")
    attachments: List[MessageAttachment] = Field(default_factory=list, description="Image attachments")
    stream: bool = Field(False, description="Stream the reply as server-sent events")


class TurnResponse(BaseModel):
    """Outcome of a non-streaming turn"""
    chat_id: str
    state: str
    failure: Optional[str] = None
    persisted: bool
    message: Optional[Message] = Field(None, description="Assistant reply")
    messages: List[Message] = Field(default_factory=list, description="Full transcript")


class ChatSummary(BaseModel):
    id: str
    title: str
    path: str
    message_count: int


class RateLimitedResponse(BaseModel):
    error: str = "rate_limited"
    detail: str
    retry_after: int
