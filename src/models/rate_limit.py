"""Rate limiting models"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from src.models.conversation import CamelModel


class RateLimitRecord(CamelModel):
    """Stored counter for one client in the current window"""
    client_id: str
    request_count: int = 0
    window_start: datetime
    updated_at: datetime


class RateLimitDecision(BaseModel):
    """Outcome of an admission check"""
    allowed: bool
    limit: int
    remaining: int
    reset_at: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None
    degraded: bool = False


class RateLimitInfo(BaseModel):
    """Read-only view of a client's window"""
    remaining: int
    reset: datetime
    limit: int
    current: int
