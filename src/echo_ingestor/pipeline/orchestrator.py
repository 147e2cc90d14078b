"""Upload orchestrator: validate → upload → (MBOX) parse and extract → complete/fail."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Protocol

from echo_ingestor.config.settings import EchoIngestorSettings
from echo_ingestor.core.exceptions import (
    EchoIngestorError,
    ParseError,
    RemovalBlockedError,
    TransferCancelledError,
    ValidationError,
)
from echo_ingestor.core.mbox_parser import MboxStreamParser, read_chunks
from echo_ingestor.core.models import (
    MailMessage,
    ProgressPhase,
    SourceFile,
    TrackedFile,
    UploadResult,
    UploadState,
    UploadSummary,
)
from echo_ingestor.core.notifications import NotificationGateway
from echo_ingestor.core.validator import validate_file

logger = logging.getLogger(__name__)

# MBOX progress scale: transfer 0-30, local parse 30-70, remote processing 70-100.
READING_END = 30.0
PARSING_END = 70.0

_TRANSITIONS: dict[UploadState, frozenset[UploadState]] = {
    UploadState.PENDING: frozenset({UploadState.UPLOADING, UploadState.FAILED}),
    UploadState.UPLOADING: frozenset(
        {UploadState.PARSING, UploadState.COMPLETED, UploadState.FAILED}
    ),
    UploadState.PARSING: frozenset({UploadState.COMPLETED, UploadState.FAILED}),
    UploadState.COMPLETED: frozenset(),
    UploadState.FAILED: frozenset(),
}


class UploadTransport(Protocol):
    """Remote collaborator that receives files and extracted mail."""

    async def upload(
        self,
        destination: str,
        source: SourceFile,
        on_progress: Callable[[float], None],
    ) -> UploadResult: ...

    async def ingest_messages(
        self,
        destination: str,
        upload_id: str,
        messages: Sequence[MailMessage],
    ) -> None: ...


class UploadOrchestrator:
    """Owns a batch of tracked files and drives each one through its lifecycle.

    Files are processed strictly one after another. A failure is recorded on
    the file and the batch moves on. Separate instances (one per knowledge
    base, say) share no state and may run concurrently.
    """

    def __init__(
        self,
        transport: UploadTransport,
        destination: str,
        settings: EchoIngestorSettings | None = None,
        *,
        self_addresses: Iterable[str] | None = None,
        notifier: NotificationGateway | None = None,
        on_change: Callable[[TrackedFile], None] | None = None,
    ) -> None:
        self._settings = settings or EchoIngestorSettings()
        self._transport = transport
        self._destination = destination
        self._self_addresses = list(
            self_addresses if self_addresses is not None else self._settings.self_addresses
        )
        self._notifier = notifier
        self._on_change = on_change

        self._files: dict[str, TrackedFile] = {}
        self._running = False
        self._active_id: str | None = None
        self._active_task: asyncio.Task[None] | None = None
        self._cancel_requested: set[str] = set()

    @property
    def on_change(self) -> Callable[[TrackedFile], None] | None:
        return self._on_change

    @on_change.setter
    def on_change(self, callback: Callable[[TrackedFile], None] | None) -> None:
        self._on_change = callback

    # -- read-only views -------------------------------------------------------

    @property
    def files(self) -> list[TrackedFile]:
        """Snapshots of every tracked file, in the order they were added."""
        return [replace(tracked) for tracked in self._files.values()]

    def get(self, file_id: str) -> TrackedFile:
        return replace(self._require(file_id))

    @property
    def uploading(self) -> bool:
        return self._running

    @property
    def total_size(self) -> int:
        """Sum of byte sizes of every accepted file. Rejected entries count as zero."""
        return sum(tracked.size for tracked in self._files.values() if not tracked.rejected)

    # -- batch mutation --------------------------------------------------------

    def add(self, sources: Iterable[SourceFile]) -> list[TrackedFile]:
        """Validate and track new files.

        Accepted files enter PENDING. Rejected files enter FAILED immediately
        with the validator's reason so they stay visible.
        """
        added: list[TrackedFile] = []

        for source in sources:
            result = validate_file(source)
            tracked = TrackedFile(
                file_id=uuid.uuid4().hex,
                source=source,
                is_mbox=result.is_mbox,
            )
            if not result.valid:
                reason = result.reason or "Invalid file"
                tracked.state = UploadState.FAILED
                tracked.error = reason
                tracked.exception = ValidationError(reason)
            else:
                logger.info("Accepted %s (%d bytes)", source.name, source.size)

            self._files[tracked.file_id] = tracked
            self._notify(tracked)
            added.append(replace(tracked))

        return added

    def can_remove(self, file_id: str) -> bool:
        """False while the file is uploading or parsing."""
        tracked = self._files.get(file_id)
        return tracked is not None and not tracked.state.in_flight

    def remove(self, file_id: str) -> None:
        """Stop tracking a file.

        Raises:
            KeyError: If the id is unknown.
            RemovalBlockedError: If the file is in flight; use cancel() instead.
        """
        tracked = self._require(file_id)
        if tracked.state.in_flight:
            raise RemovalBlockedError(
                f"{tracked.name} is {tracked.state.value}; cancel it before removing"
            )
        del self._files[file_id]

    def clear(self) -> None:
        """Stop tracking every file. Blocked while any file is in flight."""
        in_flight = [t.name for t in self._files.values() if t.state.in_flight]
        if in_flight:
            raise RemovalBlockedError(f"Cannot clear while in flight: {', '.join(in_flight)}")
        self._files.clear()

    def cancel(self, file_id: str) -> bool:
        """Abort the in-flight transfer of a file. It ends FAILED with a 'Cancelled' reason.

        Returns:
            True if a transfer was aborted, False if the file was not in flight.
        """
        tracked = self._require(file_id)
        if (
            not tracked.state.in_flight
            or self._active_id != file_id
            or self._active_task is None
        ):
            return False

        logger.info("Cancelling %s", tracked.name)
        self._cancel_requested.add(file_id)
        self._active_task.cancel()
        return True

    # -- processing ------------------------------------------------------------

    async def run(self) -> UploadSummary:
        """Process every pending file in order and return the run's counts.

        A second call while a run is active is a no-op.
        """
        if self._running:
            logger.warning("Upload run already in progress")
            return UploadSummary()

        self._running = True
        summary = UploadSummary()
        try:
            while True:
                tracked = self._next_pending()
                if tracked is None:
                    break
                await self._run_one(tracked, summary)
        finally:
            self._running = False

        logger.info(
            "Upload run finished: %d completed, %d failed, %d cancelled",
            summary.completed, summary.failed, summary.cancelled,
        )
        self._announce(summary)
        return summary

    def _next_pending(self) -> TrackedFile | None:
        for tracked in self._files.values():
            if tracked.state is UploadState.PENDING:
                return tracked
        return None

    async def _run_one(self, tracked: TrackedFile, summary: UploadSummary) -> None:
        self._active_id = tracked.file_id
        self._active_task = asyncio.create_task(self._process(tracked, summary))
        try:
            await self._active_task
        except asyncio.CancelledError:
            explicit = tracked.file_id in self._cancel_requested
            self._fail(tracked, TransferCancelledError("Cancelled"))
            summary.cancelled += 1
            if not explicit:
                raise
        finally:
            self._cancel_requested.discard(tracked.file_id)
            self._active_id = None
            self._active_task = None

    async def _process(self, tracked: TrackedFile, summary: UploadSummary) -> None:
        try:
            self._transition(
                tracked,
                UploadState.UPLOADING,
                ProgressPhase.READING if tracked.is_mbox else ProgressPhase.UPLOADING,
            )
            result = await self._transport.upload(
                self._destination,
                tracked.source,
                lambda percent: self._on_transfer_progress(tracked, percent),
            )
            tracked.remote_id = result.identifier
            logger.info("Uploaded %s as %s", tracked.name, result.identifier)

            if tracked.is_mbox:
                await self._parse_and_extract(tracked)

            self._complete(tracked)
            summary.completed += 1

        except EchoIngestorError as e:
            self._fail(tracked, e)
            summary.failed += 1
        except Exception as e:
            logger.error("Unexpected error processing %s: %s", tracked.name, e)
            self._fail(tracked, EchoIngestorError(f"Unexpected error: {e}"))
            summary.failed += 1

    async def _parse_and_extract(self, tracked: TrackedFile) -> None:
        """Parse the archive locally and submit sent-mail text in bounded batches."""
        if not self._self_addresses:
            raise ParseError("No self address configured; cannot identify sent mail")

        self._transition(tracked, UploadState.PARSING, ProgressPhase.PARSING)
        self._set_progress(tracked, READING_END)

        parser = MboxStreamParser(
            read_chunks(tracked.source, self._settings.mbox_chunk_size_bytes),
            self._self_addresses,
            total_bytes=tracked.size,
            min_content_length=self._settings.mbox_min_content_length,
            max_messages=self._settings.mbox_max_messages,
            on_progress=lambda fraction: self._set_progress(
                tracked, READING_END + fraction * (PARSING_END - READING_END)
            ),
        )
        tracked.parse_stats = parser.stats
        remote_id = tracked.remote_id or ""

        batch: list[MailMessage] = []
        # Closing the iterator on any exit releases the archive handle.
        async with contextlib.aclosing(aiter(parser)) as messages:
            async for message in messages:
                batch.append(message)
                if len(batch) >= self._settings.mbox_ingest_batch_size:
                    await self._transport.ingest_messages(self._destination, remote_id, batch)
                    batch = []

        # Remote processing has no observable progress; hold at 70 and flag it.
        tracked.phase = ProgressPhase.PROCESSING
        tracked.indeterminate = True
        self._set_progress(tracked, PARSING_END)
        self._notify(tracked)

        if batch:
            await self._transport.ingest_messages(self._destination, remote_id, batch)

        if parser.stats.messages_emitted == 0:
            logger.warning("No sent messages found in %s", tracked.name)

    # -- state helpers ---------------------------------------------------------

    def _require(self, file_id: str) -> TrackedFile:
        try:
            return self._files[file_id]
        except KeyError:
            raise KeyError(f"Unknown file id: {file_id}") from None

    def _transition(
        self,
        tracked: TrackedFile,
        state: UploadState,
        phase: ProgressPhase | None = None,
    ) -> None:
        if state not in _TRANSITIONS[tracked.state]:
            raise RuntimeError(
                f"Illegal transition {tracked.state.value} -> {state.value} for {tracked.name}"
            )
        tracked.state = state
        tracked.phase = phase
        self._notify(tracked)

    def _on_transfer_progress(self, tracked: TrackedFile, percent: float) -> None:
        if tracked.is_mbox:
            self._set_progress(tracked, percent * READING_END / 100)
        else:
            self._set_progress(tracked, percent)

    def _set_progress(self, tracked: TrackedFile, value: float) -> None:
        """Update progress, never moving backwards."""
        value = max(tracked.progress, min(value, 100.0))
        if value != tracked.progress:
            tracked.progress = value
            self._notify(tracked)

    def _complete(self, tracked: TrackedFile) -> None:
        tracked.indeterminate = False
        self._transition(tracked, UploadState.COMPLETED)
        self._set_progress(tracked, 100.0)

    def _fail(self, tracked: TrackedFile, error: EchoIngestorError) -> None:
        logger.error("Failed to process %s: %s", tracked.name, error)
        tracked.error = str(error) or type(error).__name__
        tracked.exception = error
        tracked.indeterminate = False
        self._transition(tracked, UploadState.FAILED)

    def _notify(self, tracked: TrackedFile) -> None:
        if self._on_change:
            self._on_change(replace(tracked))

    def _announce(self, summary: UploadSummary) -> None:
        if self._notifier is None or summary.processed == 0:
            return
        unsuccessful = summary.failed + summary.cancelled
        if unsuccessful:
            self._notifier.notify_error(
                body=f"{unsuccessful} of {summary.processed} files could not be processed."
            )
        else:
            self._notifier.notify_completion(
                body=f"{summary.completed} files uploaded and processed."
            )
