"""Streaming MBOX parser: chunked reads, sent-message filtering, text-only extraction."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from enum import Enum

import trafilatura

from echo_ingestor.core.exceptions import ParseError, StreamReadError
from echo_ingestor.core.models import MailMessage, MboxParseStats, SourceFile

logger = logging.getLogger(__name__)

# A message starts at a line beginning with "From " followed by the envelope sender.
_BOUNDARY_RE = re.compile(rb"^From \S", re.MULTILINE)

DEFAULT_CHUNK_SIZE = 50 * 1024 * 1024


class DecoderState(str, Enum):
    BUFFERING = "buffering"
    EMITTING = "emitting"
    DONE = "done"


@dataclass(frozen=True)
class RawMessage:
    """One framed message: undecoded bytes plus its byte range in the stream."""

    data: bytes
    start_offset: int
    end_offset: int


class MboxFrameDecoder:
    """Split an MBOX byte stream into raw messages, independent of chunk edges.

    Only complete lines are scanned for boundaries. A trailing partial line is
    kept as residual and prefixed to the next chunk, so a boundary split across
    two chunks is seen exactly as it would be in one contiguous buffer. The
    open message is emitted once the next boundary or the end of the stream
    is observed.
    """

    def __init__(self) -> None:
        self.state = DecoderState.BUFFERING
        self._residual = b""
        self._residual_offset = 0
        self._parts: list[bytes] = []
        self._message_start = 0

    def feed(self, chunk: bytes) -> list[RawMessage]:
        """Consume a chunk and return every message it closed."""
        if self.state is DecoderState.DONE:
            raise RuntimeError("Decoder already finished")

        data = self._residual + chunk
        base = self._residual_offset
        cut = data.rfind(b"\n") + 1

        self._residual = data[cut:]
        self._residual_offset = base + cut

        frames = self._scan(data[:cut], base)
        self.state = DecoderState.EMITTING if frames else DecoderState.BUFFERING
        return frames

    def finish(self) -> list[RawMessage]:
        """Flush the residual and close the last open message."""
        if self.state is DecoderState.DONE:
            return []

        frames = self._scan(self._residual, self._residual_offset)
        end = self._residual_offset + len(self._residual)
        self._residual = b""
        self._residual_offset = end

        if self._parts:
            frames.append(self._close(end))

        self.state = DecoderState.DONE
        return frames

    def _scan(self, data: bytes, base: int) -> list[RawMessage]:
        frames: list[RawMessage] = []
        start = 0

        for match in _BOUNDARY_RE.finditer(data):
            pos = match.start()
            if pos > start:
                self._append(data[start:pos], base + start)
            if self._parts:
                frames.append(self._close(base + pos))
            start = pos

        if start < len(data):
            self._append(data[start:], base + start)

        return frames

    def _append(self, piece: bytes, offset: int) -> None:
        if not self._parts:
            self._message_start = offset
        self._parts.append(piece)

    def _close(self, end: int) -> RawMessage:
        frame = RawMessage(b"".join(self._parts), self._message_start, end)
        self._parts = []
        return frame


async def read_chunks(
    source: SourceFile, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> AsyncIterator[bytes]:
    """Yield a source file's bytes in fixed-size chunks.

    The file is opened lazily and closed when the iterator is exhausted or closed.
    """
    with source.open() as stream:
        while True:
            chunk = await asyncio.to_thread(stream.read, chunk_size)
            if not chunk:
                return
            yield chunk


class MboxStreamParser:
    """Lazily decode an MBOX stream into the account owner's sent messages.

    The parser is single-pass: iterate it once with ``async for``. Reading again
    requires a new parser over a freshly opened source.

    Malformed messages are skipped and counted in ``stats``; only a failure of
    the byte source itself raises (StreamReadError).
    """

    def __init__(
        self,
        source: AsyncIterable[bytes],
        self_addresses: Iterable[str],
        *,
        total_bytes: int = 0,
        min_content_length: int = 0,
        max_messages: int | None = None,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        addresses = {addr.strip().lower() for addr in self_addresses if addr.strip()}
        if not addresses:
            raise ValueError("At least one self address is required to identify sent mail")

        self._source = source
        self._self_addresses = frozenset(addresses)
        self._min_content_length = min_content_length
        self._max_messages = max_messages
        self._on_progress = on_progress
        self._seen_hashes: set[str] = set()
        self._consumed = False
        self._last_fraction = 0.0
        self._parser = BytesParser(policy=policy.default)

        self.stats = MboxParseStats(total_bytes=total_bytes)

    def __aiter__(self) -> AsyncIterator[MailMessage]:
        if self._consumed:
            raise RuntimeError("MboxStreamParser is single-pass; reopen the source to parse again")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[MailMessage]:
        decoder = MboxFrameDecoder()

        try:
            async for chunk in self._source:
                self.stats.bytes_consumed += len(chunk)
                for frame in decoder.feed(chunk):
                    message = self._accept(frame)
                    if message is not None:
                        yield message
                        if self._limit_reached():
                            self._report_progress(done=True)
                            return
                self._report_progress()
        except OSError as e:
            raise StreamReadError(f"Failed to read MBOX stream: {e}") from e
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()

        for frame in decoder.finish():
            message = self._accept(frame)
            if message is not None:
                yield message
                if self._limit_reached():
                    break

        self._report_progress(done=True)
        logger.info(
            "MBOX parse finished: %d seen, %d emitted, %d skipped",
            self.stats.messages_seen,
            self.stats.messages_emitted,
            self.stats.messages_skipped,
        )

    def _limit_reached(self) -> bool:
        return self._max_messages is not None and self.stats.messages_emitted >= self._max_messages

    def _report_progress(self, *, done: bool = False) -> None:
        if self._on_progress is None:
            return
        if done:
            fraction = 1.0
        elif self.stats.total_bytes > 0:
            fraction = min(self.stats.bytes_consumed / self.stats.total_bytes, 1.0)
        else:
            return
        if fraction > self._last_fraction:
            self._last_fraction = fraction
            self._on_progress(fraction)

    def _accept(self, frame: RawMessage) -> MailMessage | None:
        """Decode and filter one framed message. Returns None if it was skipped."""
        self.stats.messages_seen += 1

        try:
            message = self._decode(frame)
        except ParseError as e:
            logger.debug("Skipping malformed message at byte %d: %s", frame.start_offset, e)
            self.stats.record_skip("malformed")
            return None

        if message is None:
            self.stats.record_skip("not_from_self")
            return None

        skip_reason = self._skip_reason(message)
        if skip_reason:
            self.stats.record_skip(skip_reason)
            return None

        self._seen_hashes.add(message.content_hash)
        self.stats.messages_emitted += 1
        return message

    def _skip_reason(self, message: MailMessage) -> str | None:
        if not message.text.strip():
            return "empty_content"
        if len(message.text) < self._min_content_length:
            return "content_too_short"
        if message.content_hash in self._seen_hashes:
            return "duplicate_content"
        return None

    def _decode(self, frame: RawMessage) -> MailMessage | None:
        """Decode a framed message, returning None when it was not sent by the owner.

        Raises:
            ParseError: If the message is unterminated or cannot be decoded.
        """
        raw = frame.data
        if raw.startswith(b"From "):
            newline = raw.find(b"\n")
            raw = raw[newline + 1 :] if newline != -1 else b""

        if b"\n\n" not in raw and b"\r\n\r\n" not in raw:
            raise ParseError("Message has no header/body separator")

        try:
            email_message = self._parser.parsebytes(raw)
            sender = parseaddr(str(email_message.get("From", "")))[1].lower()
            if sender not in self._self_addresses:
                return None

            subject = str(email_message.get("Subject", "(no subject)"))
            recipients = ", ".join(
                addr for _, addr in getaddresses([str(v) for v in email_message.get_all("To", [])])
            )
            text = self._extract_text(email_message)
            date = self._parse_date(str(email_message.get("Date", "")))
            message_id = str(email_message.get("Message-ID", "")).strip("<> ")
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to decode message: {e}") from e

        content_hash = hashlib.sha256(f"{subject}|{sender}|{text}".encode()).hexdigest()[:16]

        return MailMessage(
            message_id=message_id or f"mbox-{frame.start_offset}",
            sender=sender,
            recipients=recipients,
            subject=subject,
            date=date,
            text=text,
            start_offset=frame.start_offset,
            end_offset=frame.end_offset,
            content_hash=content_hash,
        )

    def _extract_text(self, email_message: EmailMessage) -> str:
        """Pick the plain-text body, falling back to HTML reduced to text.

        Attachments are never selected by get_body(), so their payloads are not decoded.
        """
        body = email_message.get_body(preferencelist=("plain", "html"))
        if body is None:
            return ""

        content = body.get_content()
        if body.get_content_type() == "text/html":
            return html_to_text(content)
        return content.strip()

    @staticmethod
    def _parse_date(date_str: str) -> datetime | None:
        if not date_str:
            return None
        try:
            return parsedate_to_datetime(date_str)
        except (TypeError, ValueError):
            logger.debug("Failed to parse date: %s", date_str)
            return None


def html_to_text(html: str) -> str:
    """Reduce an HTML body to plain text.

    trafilatura's main-content extraction is tried first. Short mail bodies
    often yield nothing there, so the whole document text is taken with
    ``trafilatura.html2txt`` instead.
    """
    if not html.strip():
        return ""

    result: str | None = None
    try:
        result = trafilatura.extract(html, output_format="txt", favor_recall=True)
    except Exception as e:
        logger.warning("Trafilatura extraction failed: %s", e)

    if result:
        return result.strip()

    logger.debug("Trafilatura extracted nothing, using full-text fallback")
    return trafilatura.html2txt(html).strip()
