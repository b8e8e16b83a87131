"""Error taxonomy for the chat session service"""

from typing import Optional


class MedChatError(Exception):
    """Base class for service errors"""


class RateLimited(MedChatError):
    """Client exceeded its request window"""

    def __init__(self, retry_after_seconds: int, limit: Optional[int] = None):
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit
        super().__init__(f"Rate limit exceeded, retry after {retry_after_seconds}s")


class ProducerError(MedChatError):
    """Model stream failed"""


class StoreUnavailable(MedChatError):
    """Document store could not be reached"""

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message)


class MessageValidationError(MedChatError):
    """Incoming message rejected before the turn starts"""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class ChatNotFound(MedChatError):
    """No chat with the requested id is visible to the caller"""


class DuplicateKey(MedChatError):
    """Insert collided with a unique index"""
