"""Shared fixtures for Echo Ingestor tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from email.message import EmailMessage
from typing import Any

import pytest

from echo_ingestor.config.settings import EchoIngestorSettings
from echo_ingestor.core.models import ContentKit

SELF_ADDRESS = "me@example.com"

LONG_BODY = (
    "Thanks for the update on the launch plan. I think we should move the demo to "
    "Thursday so the design team has time to finish the walkthrough."
)


def build_message(
    sender: str,
    subject: str,
    body: str = LONG_BODY,
    *,
    to: str = "friend@example.org",
    date: str = "Mon, 15 Jan 2024 10:30:00 +0000",
    message_id: str | None = None,
    html: str | None = None,
    attachment: bytes | None = None,
) -> bytes:
    """Serialize one mail message with its mbox 'From ' envelope line."""
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message["Date"] = date
    message["Message-ID"] = message_id or f"<{abs(hash((sender, subject)))}@example.com>"

    if body:
        message.set_content(body)
    if html is not None:
        if body:
            message.add_alternative(html, subtype="html")
        else:
            message.set_content(html, subtype="html")
    if attachment is not None:
        message.add_attachment(
            attachment, maintype="application", subtype="octet-stream", filename="data.bin"
        )

    envelope = f"From {sender} Mon Jan 15 10:30:00 2024\n".encode()
    return envelope + message.as_bytes() + b"\n"


@pytest.fixture
def self_address() -> str:
    return SELF_ADDRESS


@pytest.fixture
def make_message() -> Callable[..., bytes]:
    """Factory for serialized mbox messages."""
    return build_message


@pytest.fixture
def sample_mbox() -> bytes:
    """An archive of 10 messages sent by SELF_ADDRESS and 5 received ones, interleaved."""
    parts = []
    for i in range(10):
        parts.append(
            build_message(
                f"Me <{SELF_ADDRESS}>",
                f"Sent message {i}",
                f"{LONG_BODY} Reference number {i}.",
                message_id=f"<sent-{i}@example.com>",
            )
        )
        if i % 2 == 0:
            parts.append(
                build_message(
                    "Someone Else <other@example.net>",
                    f"Received message {i}",
                    message_id=f"<received-{i}@example.net>",
                )
            )
    return b"".join(parts)


@pytest.fixture
def settings() -> EchoIngestorSettings:
    """Settings isolated from the environment, with fast retries."""
    return EchoIngestorSettings(
        _env_file=None,
        api_base_url="http://test.local/api",
        self_addresses=[SELF_ADDRESS],
        mbox_chunk_size_bytes=256,
        mbox_min_content_length=10,
        mbox_ingest_batch_size=4,
        max_retries=2,
        initial_backoff_seconds=0.0,
        max_backoff_seconds=0.0,
        library_page_size=2,
    )


def build_kit(
    kit_id: str,
    kit_type: str,
    items: list[dict[str, Any]],
    created_at: datetime | None = None,
) -> ContentKit:
    return ContentKit(
        kit_id=kit_id,
        kit_type=kit_type,
        created_at=created_at or datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
        items=tuple(items),
    )


@pytest.fixture
def make_kit() -> Callable[..., ContentKit]:
    """Factory for ContentKit instances."""
    return build_kit
