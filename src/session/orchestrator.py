"""
Session Orchestrator - one user turn end to end

A turn moves through

    idle -> admitting -> streaming -> finalizing -> completed
                 |            |            |
                 +------------+------------+--> failed(reason)

admitting   the per-client rate limiter is consulted; a denial fails the
            turn with RATE_LIMITED and raises RateLimited without touching
            the transcript or the store.
streaming   the stored transcript is loaded, the user message appended,
            topic context updated, and model deltas are folded into a
            single assistant entry that is replaced on every delta.
finalizing  the transcript is consolidated and upserted. If the stored
            transcript could not be loaded the turn is answered but not
            persisted, since ownership could not be checked.

Producer failures and the turn timeout substitute a fixed apology for the
partial reply, persist it, and end in failed(PRODUCER_ERROR). Cancelling
the task keeps whatever was buffered in the in-memory transcript, persists
nothing, ends in failed(CANCELLED) and re-raises the cancellation.
"""

import asyncio
import base64
import binascii
import logging
import re
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from src.config import Settings
from src.conversation.analyzer import (
    build_system_prompt,
    detect_emergency,
    is_follow_up,
    should_update_context,
)
from src.conversation.chat_store import ChatStore
from src.conversation.consolidator import consolidate_messages
from src.errors import (
    ChatNotFound,
    MessageValidationError,
    RateLimited,
    StoreUnavailable,
)
from src.memory.context_store import ContextStore
from src.models.conversation import (
    ConversationContext,
    Message,
    MessageAttachment,
    MessageMetadata,
    new_message_id,
    utc_now,
)
from src.models.rate_limit import RateLimitDecision
from src.rate_limiter.limiter import FixedWindowRateLimiter
from src.streaming.stream_handler import ModelProducer

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = (
    "Sorry, I encountered an error while generating a response. "
    "Please try again in a moment."
)
IMAGE_FALLBACK_MESSAGE = (
    "Sorry, I encountered an error analyzing the image. "
    "Please ensure it's a valid medical image and try again."
)

_DATA_URL_PREFIX = re.compile(r"^data:(?P<mime>image/[\w.+-]+);base64,")

DeltaCallback = Callable[[str], Awaitable[None]]


class TurnState(str, Enum):
    IDLE = "idle"
    ADMITTING = "admitting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class TurnFailure(str, Enum):
    RATE_LIMITED = "rate_limited"
    CANCELLED = "cancelled"
    PRODUCER_ERROR = "producer_error"
    CHAT_NOT_FOUND = "chat_not_found"
    STORE_UNAVAILABLE = "store_unavailable"


_TRANSITIONS = {
    TurnState.IDLE: {TurnState.ADMITTING},
    TurnState.ADMITTING: {TurnState.STREAMING, TurnState.FAILED},
    TurnState.STREAMING: {TurnState.FINALIZING, TurnState.FAILED},
    TurnState.FINALIZING: {TurnState.COMPLETED, TurnState.FAILED},
    TurnState.COMPLETED: set(),
    TurnState.FAILED: set(),
}


@dataclass
class Turn:
    """Mutable state of one user turn"""
    chat_id: str
    user_id: str
    client_id: str
    content: str
    attachments: List[MessageAttachment] = field(default_factory=list)
    state: TurnState = TurnState.IDLE
    failure: Optional[TurnFailure] = None
    error: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    transcript: List[Message] = field(default_factory=list)
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    reply_metadata: MessageMetadata = field(default_factory=MessageMetadata)
    system_prompt: str = ""
    buffer: str = ""
    persisted: bool = False
    history_loaded: bool = True

    @property
    def finished(self) -> bool:
        return self.state in (TurnState.COMPLETED, TurnState.FAILED)

    @property
    def is_image_analysis(self) -> bool:
        return bool(self.attachments)

    def transition(self, state: TurnState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid turn transition {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, failure: TurnFailure, error: Optional[str] = None) -> None:
        self.transition(TurnState.FAILED)
        self.failure = failure
        self.error = error

    def apply_delta(self, delta: str) -> Optional[Message]:
        """Append delta to the buffer and replace the assistant entry"""
        if not delta:
            return self.assistant_message

        self.buffer += delta
        if self.assistant_message is None:
            self.assistant_message = Message(
                role="assistant",
                content=self.buffer,
                metadata=self.reply_metadata,
            )
            self.transcript.append(self.assistant_message)
        else:
            updated = self.assistant_message.model_copy(update={"content": self.buffer})
            self.transcript[-1] = updated
            self.assistant_message = updated
        return self.assistant_message

    def substitute_fallback(self, text: str) -> Message:
        """Swap the partial reply (if any) for a fixed message"""
        if self.assistant_message is not None and self.transcript and self.transcript[-1].id == self.assistant_message.id:
            self.transcript.pop()
        self.buffer = text
        self.assistant_message = Message(role="assistant", content=text, metadata=self.reply_metadata)
        self.transcript.append(self.assistant_message)
        return self.assistant_message


def normalize_attachments(
    attachments: Optional[List[MessageAttachment]],
    max_bytes: int,
) -> List[MessageAttachment]:
    """Strip data-URL prefixes and validate payloads"""
    if not attachments:
        return []

    errors: List[str] = []
    normalized: List[MessageAttachment] = []
    for index, attachment in enumerate(attachments):
        data = attachment.data.strip()
        mime_type = attachment.mime_type

        prefix = _DATA_URL_PREFIX.match(data)
        if prefix:
            data = data[prefix.end():]
            mime_type = mime_type or prefix.group("mime")

        if attachment.type != "image":
            errors.append(f"attachment {index}: unsupported type {attachment.type!r}")
            continue
        if mime_type and not mime_type.startswith("image/"):
            errors.append(f"attachment {index}: unsupported MIME type {mime_type!r}")
            continue

        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            errors.append(f"attachment {index}: payload is not valid base64")
            continue

        if not raw:
            errors.append(f"attachment {index}: payload is empty")
        elif len(raw) > max_bytes:
            errors.append(f"attachment {index}: {len(raw)} bytes exceeds limit of {max_bytes}")
        else:
            normalized.append(attachment.model_copy(update={"data": data, "mime_type": mime_type}))

    if errors:
        raise MessageValidationError(errors)
    return normalized


class SessionOrchestrator:
    """Drive turns through admission, streaming and persistence"""

    def __init__(
        self,
        rate_limiter: FixedWindowRateLimiter,
        context_store: ContextStore,
        chat_store: ChatStore,
        producer: ModelProducer,
        settings: Optional[Settings] = None,
    ):
        settings = settings or Settings()
        self.rate_limiter = rate_limiter
        self.context_store = context_store
        self.chat_store = chat_store
        self.producer = producer
        self.turn_timeout_seconds: Optional[float] = settings.turn_timeout_seconds or None
        self.max_attachment_bytes = settings.max_attachment_bytes
        self.require_durable_persistence = settings.require_durable_persistence
        self._chat_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def new_turn(
        self,
        chat_id: str,
        user_id: str,
        client_id: str,
        content: str,
        attachments: Optional[List[MessageAttachment]] = None,
    ) -> Turn:
        """Validate input and create an idle turn"""
        normalized = normalize_attachments(attachments, self.max_attachment_bytes)
        if not content.strip() and not normalized:
            raise MessageValidationError(["message has no content"])

        return Turn(
            chat_id=chat_id,
            user_id=user_id,
            client_id=client_id,
            content=content,
            attachments=normalized,
        )

    async def admit(self, turn: Turn) -> RateLimitDecision:
        turn.transition(TurnState.ADMITTING)
        decision = await self.rate_limiter.admit(turn.client_id)
        if not decision.allowed:
            turn.retry_after_seconds = decision.retry_after_seconds
            turn.fail(TurnFailure.RATE_LIMITED)
            raise RateLimited(decision.retry_after_seconds or 0, limit=decision.limit)
        return decision

    async def run_turn(self, turn: Turn, on_delta: Optional[DeltaCallback] = None) -> Turn:
        await self.admit(turn)
        return await self.execute(turn, on_delta)

    def _chat_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[chat_id] = lock
        return lock

    async def execute(self, turn: Turn, on_delta: Optional[DeltaCallback] = None) -> Turn:
        """Run an admitted turn to a terminal state"""
        if turn.state != TurnState.ADMITTING:
            raise RuntimeError(f"Turn must be admitted before execution (state {turn.state.value})")

        try:
            # One active turn per chat
            async with self._chat_lock(turn.chat_id):
                return await self._execute(turn, on_delta)
        except asyncio.CancelledError:
            if not turn.finished:
                turn.fail(TurnFailure.CANCELLED)
            logger.info(
                "Turn cancelled for chat %s after %d characters",
                turn.chat_id,
                len(turn.buffer),
            )
            raise

    async def _execute(self, turn: Turn, on_delta: Optional[DeltaCallback]) -> Turn:
        try:
            turn.transcript = await self._load_transcript(turn)
        except ChatNotFound as e:
            turn.fail(TurnFailure.CHAT_NOT_FOUND, str(e))
            raise

        self._open_turn(turn)
        turn.transition(TurnState.STREAMING)

        try:
            async with asyncio.timeout(self.turn_timeout_seconds):
                async for delta in self.producer.stream_deltas(list(turn.transcript), turn.system_prompt):
                    turn.apply_delta(delta)
                    if on_delta is not None:
                        await on_delta(delta)
        except Exception as e:
            # Producers are not required to wrap their errors in ProducerError
            if isinstance(e, TimeoutError):
                error = str(e) or "turn timed out"
            else:
                error = str(e) or type(e).__name__
            logger.error("Model stream failed for chat %s: %s", turn.chat_id, error, exc_info=True)
            turn.substitute_fallback(
                IMAGE_FALLBACK_MESSAGE if turn.is_image_analysis else FALLBACK_MESSAGE
            )
            await self._finalize(turn)
            if not turn.finished:
                turn.fail(TurnFailure.PRODUCER_ERROR, error)
            return turn

        await self._finalize(turn)
        if not turn.finished:
            turn.transition(TurnState.COMPLETED)
        logger.info(
            "Turn completed for chat %s (%d messages, persisted=%s)",
            turn.chat_id,
            len(turn.transcript),
            turn.persisted,
        )
        return turn

    async def _load_transcript(self, turn: Turn) -> List[Message]:
        try:
            chat = await self.chat_store.get_chat(turn.chat_id)
        except StoreUnavailable as e:
            logger.warning("Could not load chat %s, replying without history: %s", turn.chat_id, e)
            turn.history_loaded = False
            return []

        if chat is None:
            return []
        if chat.user_id != turn.user_id:
            raise ChatNotFound(f"Chat {turn.chat_id} not found")
        return list(chat.messages)

    def _open_turn(self, turn: Turn) -> None:
        """Append the user message, update context and build the prompt"""
        history = list(turn.transcript)
        content = turn.content
        message_id = new_message_id()
        emergency = detect_emergency(content)

        context = self.context_store.get(turn.chat_id)
        if content.strip() and should_update_context(content, context):
            context = self.context_store.set(
                turn.chat_id,
                ConversationContext(current_topic=content, last_message_id=message_id),
            )
        elif context is not None:
            context = self.context_store.update(
                turn.chat_id,
                related_messages=[*context.related_messages, message_id],
            ) or context

        turn.user_message = Message(
            id=message_id,
            role="user",
            content=content,
            attachments=turn.attachments or None,
            metadata=MessageMetadata(
                timestamp=utc_now(),
                is_follow_up=is_follow_up(content, history),
                topic=context.current_topic if context else None,
                message_type="image_analysis" if turn.is_image_analysis else "text",
                is_emergency=True if emergency else None,
            ),
        )
        turn.transcript.append(turn.user_message)

        turn.reply_metadata = MessageMetadata(
            timestamp=utc_now(),
            message_type="image_analysis_response" if turn.is_image_analysis else "text",
            is_emergency_response=True if emergency else None,
            related_to_image=message_id if turn.is_image_analysis else None,
        )
        turn.system_prompt = build_system_prompt(
            content,
            context,
            emergency=emergency,
            image_analysis=turn.is_image_analysis,
        )

    async def _finalize(self, turn: Turn) -> None:
        """Consolidate and persist; marks the turn failed on strict store errors"""
        if turn.state == TurnState.STREAMING:
            turn.transition(TurnState.FINALIZING)

        turn.transcript = consolidate_messages(turn.transcript)

        # Without the stored transcript neither ownership nor the title can be checked
        if not turn.history_loaded:
            turn.persisted = False
            logger.warning("Chat %s was not persisted: stored transcript could not be loaded", turn.chat_id)
            if self.require_durable_persistence:
                error = StoreUnavailable(f"Chat {turn.chat_id} could not be loaded", operation="find_one")
                turn.fail(TurnFailure.STORE_UNAVAILABLE, str(error))
                raise error
            return

        chat = self.chat_store.build_chat(turn.chat_id, turn.user_id, turn.transcript)
        try:
            await self.chat_store.save_chat(chat)
            turn.persisted = True
        except ChatNotFound as e:
            turn.persisted = False
            turn.fail(TurnFailure.CHAT_NOT_FOUND, str(e))
            raise
        except StoreUnavailable as e:
            turn.persisted = False
            logger.warning("Chat %s was not persisted: %s", turn.chat_id, e)
            if self.require_durable_persistence:
                turn.fail(TurnFailure.STORE_UNAVAILABLE, str(e))
                raise
