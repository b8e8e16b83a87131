"""
Service configuration

Every setting is read from the environment (a local .env file is loaded
first when present). Components receive a Settings instance instead of
reading os.environ themselves, so tests can build one directly.
"""

import os
from typing import Optional
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime settings"""

    model_config = ConfigDict(protected_namespaces=())

    # Storage
    store_backend: str = Field("redis", description="redis or memory")
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # Model producer
    model_name: str = "gemini/gemini-1.5-flash"
    model_temperature: float = 0.7

    # Rate limiting (AI endpoint)
    rate_limit_per_minute: int = 60
    rate_limit_window_seconds: int = 60

    # Rate limiting (inbound edge)
    edge_rate_limit: str = "50/day"
    edge_rate_limit_storage_uri: str = "memory://"

    # Session
    context_store_capacity: int = 1000
    turn_timeout_seconds: float = 120.0
    max_attachment_bytes: int = 5 * 1024 * 1024
    require_durable_persistence: bool = False

    # Server
    admin_api_key: Optional[str] = None
    log_level: str = "INFO"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables"""
        load_dotenv()
        return cls(
            store_backend=os.getenv("STORE_BACKEND", "redis"),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD"),
            redis_db=int(os.getenv("REDIS_DB", "0")),
            model_name=os.getenv("MODEL_NAME", "gemini/gemini-1.5-flash"),
            model_temperature=float(os.getenv("MODEL_TEMPERATURE", "0.7")),
            rate_limit_per_minute=int(os.getenv("RATE_LIMIT_PER_MINUTE", "60")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            edge_rate_limit=os.getenv("EDGE_RATE_LIMIT", "50/day"),
            edge_rate_limit_storage_uri=os.getenv("EDGE_RATE_LIMIT_STORAGE_URI", "memory://"),
            context_store_capacity=int(os.getenv("CONTEXT_STORE_CAPACITY", "1000")),
            turn_timeout_seconds=float(os.getenv("TURN_TIMEOUT_SECONDS", "120")),
            max_attachment_bytes=int(os.getenv("MAX_ATTACHMENT_BYTES", str(5 * 1024 * 1024))),
            require_durable_persistence=_env_bool("REQUIRE_DURABLE_PERSISTENCE", False),
            admin_api_key=os.getenv("ADMIN_API_KEY"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            gateway_host=os.getenv("GATEWAY_HOST", "0.0.0.0"),
            gateway_port=int(os.getenv("GATEWAY_PORT", "8000")),
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"
