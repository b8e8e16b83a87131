"""
Message consolidation

Streaming writes one transcript entry per delta snapshot, so a raw
transcript can hold "Hel", "Hello", "Hello there" as three assistant
entries. consolidate_messages folds such runs back into one entry.

The merge rule is a length heuristic, not a real merge: inside a run of
same-role, same-emergency-flag, attachment-free messages the longest
content seen so far wins. A message starts a new entry when the role or
the isEmergencyResponse flag changes, when it or the previous entry
carries attachments, or when its id equals the previous entry's id. The
last rule means a repeated id opens a new segment instead of patching the
earlier entry.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from src.models.conversation import Message, MessageAttachment, utc_now

DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"


def process_attachment(attachment: MessageAttachment) -> MessageAttachment:
    return MessageAttachment(
        type="image",
        data=attachment.data,
        mime_type=attachment.mime_type or DEFAULT_IMAGE_MIME_TYPE,
        analysis_id=attachment.analysis_id,
    )


def process_message(message: Message, now: Optional[datetime] = None) -> Message:
    """Normalise attachments and default the metadata timestamp"""
    attachments = None
    if message.attachments:
        attachments = [process_attachment(a) for a in message.attachments]

    metadata = message.metadata
    if metadata.timestamp is None:
        metadata = metadata.model_copy(update={"timestamp": now or utc_now()})

    return message.model_copy(update={"attachments": attachments, "metadata": metadata})


def _starts_new_entry(last: Optional[Message], current: Message) -> bool:
    if last is None:
        return True
    return (
        last.role != current.role
        or last.metadata.is_emergency_response != current.metadata.is_emergency_response
        or last.id == current.id
        or current.has_attachments
        or last.has_attachments
    )


def consolidate_messages(messages: Iterable[Message], now: Optional[datetime] = None) -> List[Message]:
    now = now or utc_now()
    consolidated: List[Message] = []

    for current in messages:
        last = consolidated[-1] if consolidated else None
        processed = process_message(current, now)

        if _starts_new_entry(last, current):
            consolidated.append(processed)
        elif len(current.content) > len(last.content):
            consolidated[-1] = processed

    return consolidated
