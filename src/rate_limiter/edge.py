"""
Inbound edge rate limiting

A coarse per-client budget (50 POSTs per day by default) applied to the
HTTP surface before any turn logic runs. Backed by slowapi so the counter
storage can be memory:// for a single process or redis:// when several
workers share the budget. Storage errors are swallowed, which admits the
request. Responses carry Retry-After and X-RateLimit-* headers.
"""

import logging
from fastapi import Request
from slowapi import Limiter

from src.config import Settings
from src.rate_limiter.identity import client_identity

logger = logging.getLogger(__name__)


def edge_client_key(request: Request) -> str:
    """slowapi key function: client identity from proxy headers"""
    return client_identity(request.headers)


def build_edge_limiter(settings: Settings) -> Limiter:
    """Create the edge limiter from settings"""
    logger.debug(
        "Edge limiter: %s per client (storage %s)",
        settings.edge_rate_limit,
        settings.edge_rate_limit_storage_uri,
    )
    return Limiter(
        key_func=edge_client_key,
        strategy="fixed-window",
        storage_uri=settings.edge_rate_limit_storage_uri,
        swallow_errors=True,
        headers_enabled=True,
    )
