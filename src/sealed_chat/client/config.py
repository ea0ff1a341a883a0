"""Client-side settings.

Loaded from environment variables prefixed with `SEALED_CHAT_CLIENT_`.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Configuration for a chat client process."""

    # Server endpoints
    server_url: str = Field(default="http://localhost:8000")
    ws_url: str | None = Field(default=None)

    # Local durable store (SQLite)
    store_path: str = Field(default="sealed_chat_client.db")
    retention_days: int = Field(default=30, ge=1)

    # Ack handling and retry policy
    ack_timeout_seconds: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=60.0, gt=0)
    flush_interval_seconds: float = Field(default=15.0, gt=0)

    # Reconnect loop
    reconnect_base_seconds: float = Field(default=0.5, gt=0)
    reconnect_max_seconds: float = Field(default=30.0, gt=0)

    # Caches and batching
    key_cache_size: int = Field(default=512, ge=1)
    read_receipt_debounce_seconds: float = Field(default=0.5, ge=0)
    http_timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="SEALED_CHAT_CLIENT_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def socket_url(self) -> str:
        """Return the WebSocket URL, derived from `server_url` when unset."""
        if self.ws_url:
            return self.ws_url
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/api/v1/ws"
