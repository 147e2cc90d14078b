"""HTTP client for the remote content service: uploads, mail ingestion, library, feedback."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from echo_ingestor.config.settings import EchoIngestorSettings
from echo_ingestor.core.exceptions import ApiError, RateLimitError, TransferError
from echo_ingestor.core.models import (
    ContentKit,
    FeedbackVerdict,
    KitPage,
    LibraryFilter,
    MailMessage,
    SourceFile,
    UploadResult,
)
from echo_ingestor.core.normalizer import parse_timestamp

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents an HTTP 429 response."""
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429


def _is_retryable(exc: Exception) -> bool:
    """Rate limits, server errors and transport failures are worth retrying."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class EchoApiClient:
    """Async wrapper around the content service REST API.

    Implements the upload transport, library fetch and feedback contracts used
    by UploadOrchestrator and ContentLibraryAggregator.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        request_timeout_seconds: float = 30.0,
        upload_timeout_seconds: float = 600.0,
        upload_chunk_size_bytes: int = 1024 * 1024,
        page_size: int = 20,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=request_timeout_seconds,
        )
        self._upload_timeout = upload_timeout_seconds
        self._upload_chunk_size = upload_chunk_size_bytes
        self._page_size = page_size
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds

    @classmethod
    def from_settings(cls, settings: EchoIngestorSettings) -> EchoApiClient:
        return cls(
            settings.api_base_url,
            token=settings.api_token,
            request_timeout_seconds=settings.request_timeout_seconds,
            upload_timeout_seconds=settings.upload_timeout_seconds,
            upload_chunk_size_bytes=settings.upload_chunk_size_bytes,
            page_size=settings.library_page_size,
            max_retries=settings.max_retries,
            initial_backoff_seconds=settings.initial_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    async def __aenter__(self) -> EchoApiClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(
        self, method: str, path: str, context: str, **kwargs: Any
    ) -> dict[str, Any]:
        """Send a request with exponential backoff on 429, 5xx and transport errors.

        Args:
            method: HTTP method.
            path: Path relative to the API base URL.
            context: Description for log messages (e.g. "fetch kits").

        Returns:
            The decoded JSON envelope.

        Raises:
            RateLimitError: When retries are exhausted on 429 responses.
            ApiError: On any other failure.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
                response.raise_for_status()
                return self._unwrap(response, context)
            except httpx.HTTPError as e:
                if not _is_retryable(e):
                    raise ApiError(f"Failed to {context}: {e}") from e
                if attempt >= self._max_retries:
                    if _is_rate_limit_error(e):
                        raise RateLimitError(
                            f"Rate limited during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    raise ApiError(
                        f"Failed to {context} after {self._max_retries} retries: {e}"
                    ) from e
                sleep_time = min(backoff, self._max_backoff)
                jitter = random.uniform(0, sleep_time)
                logger.warning(
                    "Retryable error during %s (attempt %d/%d), sleeping %.2fs: %s",
                    context, attempt + 1, self._max_retries, jitter, e,
                )
                await asyncio.sleep(jitter)
                backoff = min(backoff * 2, self._max_backoff)

        # Should not be reached, but just in case
        raise ApiError(f"Failed to {context} after {self._max_retries} retries")

    @staticmethod
    def _unwrap(response: httpx.Response, context: str) -> dict[str, Any]:
        """Decode the {success, data, error} envelope."""
        try:
            payload = response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON while trying to {context}: {e}") from e

        if not isinstance(payload, dict):
            raise ApiError(f"Unexpected response while trying to {context}")
        if payload.get("success") is False:
            raise ApiError(payload.get("error") or payload.get("message") or f"{context} rejected")
        return payload

    # -- upload transport ------------------------------------------------------

    async def upload(
        self,
        destination: str,
        source: SourceFile,
        on_progress: Callable[[float], None],
    ) -> UploadResult:
        """Stream a file to a knowledge base, reporting percent progress per chunk.

        Streaming bodies cannot be replayed, so uploads are not retried.
        Cancelling the awaiting task aborts the transfer.

        Raises:
            TransferError: On network failure or remote rejection.
        """

        async def body() -> AsyncIterator[bytes]:
            sent = 0
            with source.open() as stream:
                while True:
                    chunk = await asyncio.to_thread(stream.read, self._upload_chunk_size)
                    if not chunk:
                        break
                    yield chunk
                    sent += len(chunk)
                    if source.size > 0:
                        on_progress(min(sent * 100 / source.size, 100.0))

        try:
            response = await self._client.post(
                "/files/upload",
                params={"kbId": destination, "filename": source.name},
                content=body(),
                headers={"Content-Type": source.mime_type, "Content-Length": str(source.size)},
                timeout=self._upload_timeout,
            )
            response.raise_for_status()
            payload = self._unwrap(response, f"upload {source.name}")
        except httpx.HTTPError as e:
            raise TransferError(f"Upload of {source.name} failed: {e}") from e
        except OSError as e:
            raise TransferError(f"Could not read {source.name}: {e}") from e
        except ApiError as e:
            raise TransferError(str(e)) from e

        data = payload.get("data") or {}
        identifier = data.get("id") or payload.get("id")
        if not identifier:
            raise TransferError(f"Upload of {source.name} returned no identifier")

        logger.debug("Uploaded %s as %s", source.name, identifier)
        return UploadResult(identifier=str(identifier))

    async def ingest_messages(
        self,
        destination: str,
        upload_id: str,
        messages: Sequence[MailMessage],
    ) -> None:
        """Submit extracted sent-mail text for an uploaded archive."""
        emails = [
            {
                "messageId": message.message_id,
                "from": message.sender,
                "to": message.recipients,
                "subject": message.subject,
                "date": message.date.isoformat() if message.date else None,
                "textContent": message.text,
                "contentHash": message.content_hash,
            }
            for message in messages
        ]
        await self._request_with_retry(
            "POST",
            "/kb/content/mbox/messages",
            "ingest mail messages",
            json={"knowledgeBaseId": destination, "uploadId": upload_id, "emails": emails},
            timeout=self._upload_timeout,
        )

    # -- library fetch ---------------------------------------------------------

    async def fetch_kits(
        self,
        cursor: str | None = None,
        library_filter: LibraryFilter | None = None,
    ) -> KitPage:
        """Fetch one page of content kits. A missing next cursor means end of collection."""
        params: dict[str, Any] = {"limit": self._page_size}
        if cursor:
            params["cursor"] = cursor
        if library_filter and library_filter.content_type:
            params["type"] = library_filter.content_type.value

        payload = await self._request_with_retry(
            "GET", "/content/kits", "fetch kits", params=params
        )
        data = payload.get("data") or {}

        kits = tuple(self._parse_kit(raw) for raw in data.get("kits", []))
        logger.debug("Fetched %d kits (cursor=%s)", len(kits), cursor)
        return KitPage(
            kits=kits,
            next_cursor=data.get("nextCursor") or None,
            total_hint=int(data.get("total") or len(kits)),
        )

    @staticmethod
    def _parse_kit(raw: dict[str, Any]) -> ContentKit:
        try:
            kit_id = str(raw["id"])
            kit_type = str(raw["type"])
        except KeyError as e:
            raise ApiError(f"Malformed kit in response, missing {e}") from e

        return ContentKit(
            kit_id=kit_id,
            kit_type=kit_type,
            created_at=parse_timestamp(raw.get("createdAt")) or EPOCH,
            items=tuple(raw.get("items") or ()),
        )

    # -- feedback --------------------------------------------------------------

    async def send_feedback(self, content_id: str, verdict: FeedbackVerdict) -> None:
        await self._request_with_retry(
            "POST",
            f"/generate/feedback/{content_id}",
            "send feedback",
            json={"feedback": verdict.value},
        )
