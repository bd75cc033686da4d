"""ShelfSync configuration.

Loads from environment variables and an optional .env file using the
pydantic-settings pattern. Unknown keys are ignored so the same .env can
be shared with the proxy deployment.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class ShelfSyncSettings(BaseSettings):
    """Configuration for the ShelfSync store layer, proxy and DAN registry."""

    # ----- Vector store -----
    qdrant_url: str = Field(
        default="",
        description="Qdrant REST base URL. Empty selects the in-memory store.",
    )
    qdrant_api_key: str = Field(
        default="",
        description="API key sent to the store (usually empty behind the proxy).",
    )
    qdrant_timeout_seconds: float = Field(default=15.0, description="HTTP timeout.")

    # ----- Vectors -----
    vector_size: int = Field(default=768, description="Embedding dimensionality.")
    vector_distance: str = Field(default="Cosine", description="Distance metric.")

    # ----- Schema manager -----
    verify_attempts: int = Field(
        default=3,
        description="Attempts to re-read a freshly created collection.",
    )
    verify_delay_seconds: float = Field(
        default=0.5,
        description="Delay between verification attempts.",
    )

    # ----- Scroll -----
    scroll_limit: int = Field(default=1000, description="Page size for bulk scroll.")
    scroll_retries: int = Field(
        default=3,
        description="Retry budget for HTTP 400 during one bulk scroll.",
    )
    scroll_backoff_seconds: float = Field(
        default=1.0,
        description="Linear backoff step between scroll retries.",
    )
    scroll_max_points: int = Field(
        default=100_000,
        description="Safety cap on points fetched by one bulk scroll.",
    )

    # ----- Business defaults -----
    default_markup: float = Field(
        default=1.4,
        description="Sell price multiplier applied to cost when none is given.",
    )
    seed_on_empty: bool = Field(
        default=True,
        description="Seed a starter supplier/product/batch for empty stores.",
    )

    # ----- AI service (Gemini) -----
    gemini_api_key: str = Field(default="", description="Gemini API key.")
    embedding_model: str = Field(default="text-embedding-004")
    extraction_model: str = Field(default="gemini-2.5-flash")

    # ----- DAN registry -----
    enable_dan: bool = Field(default=False, description="Enable DAN event publishing.")
    dan_key_salt: str = Field(default="dan-dev-salt")
    dan_state_dir: str = Field(
        default="~/.shelfsync",
        description="Directory for the DAN key store and offline event buffer.",
    )
    dan_poll_interval_seconds: int = Field(default=15)
    supabase_url: str = Field(default="", description="Supabase project URL.")
    supabase_service_key: str = Field(default="", description="Supabase service key.")

    # ----- Proxy -----
    qdrant_upstream_url: str = Field(
        default="",
        description="Upstream Qdrant URL the proxy forwards to.",
    )
    qdrant_upstream_api_key: str = Field(
        default="",
        description="Server-held API key injected by the proxy.",
    )
    proxy_host: str = Field(default="0.0.0.0", description="Bind host.")
    proxy_port: int = Field(default=8787, description="Bind port.")
    proxy_timeout_seconds: float = Field(default=30.0)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def proxy_configured(self) -> bool:
        return bool(self.qdrant_upstream_url and self.qdrant_upstream_api_key)


@lru_cache
def get_settings() -> ShelfSyncSettings:
    """Get cached settings singleton."""
    return ShelfSyncSettings()
