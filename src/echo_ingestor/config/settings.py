"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class EchoIngestorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="ECHO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote API
    api_base_url: str = "http://localhost:8000/api"
    api_token: str | None = None
    knowledge_base_id: str | None = None
    request_timeout_seconds: float = 30.0
    upload_timeout_seconds: float = 600.0
    upload_chunk_size_bytes: int = 1 * MIB

    # MBOX extraction
    self_addresses: list[str] = []
    mbox_chunk_size_bytes: int = 50 * MIB
    mbox_min_content_length: int = 50
    mbox_max_messages: int | None = None
    mbox_ingest_batch_size: int = 100

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0

    # Content library
    library_page_size: int = 20

    # Notifications
    notification_dedupe_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
