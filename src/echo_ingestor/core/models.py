"""Dataclasses and enums for the Echo Ingestor domain model."""

from __future__ import annotations

import io
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO

from echo_ingestor.core.exceptions import EchoIngestorError, ValidationError

# ---------------------------------------------------------------------------
# Upload pipeline
# ---------------------------------------------------------------------------


class UploadState(str, Enum):
    """Lifecycle of a tracked file. Transitions only move forward."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PARSING = "parsing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in (UploadState.UPLOADING, UploadState.PARSING)

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.COMPLETED, UploadState.FAILED)


class ProgressPhase(str, Enum):
    """What the current progress percentage describes."""

    UPLOADING = "uploading"
    READING = "reading"
    PARSING = "parsing"
    PROCESSING = "processing"


@dataclass(frozen=True)
class SourceFile:
    """A candidate file: declared identity plus a way to open its bytes."""

    name: str
    mime_type: str
    size: int
    path: Path | None = None
    data: bytes | None = None

    @classmethod
    def from_path(cls, path: Path, mime_type: str | None = None) -> SourceFile:
        """Build a SourceFile for a local path, guessing the MIME type from its name."""
        guessed = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(name=path.name, mime_type=guessed, size=path.stat().st_size, path=path)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str) -> SourceFile:
        return cls(name=name, mime_type=mime_type, size=len(data), data=data)

    def open(self) -> BinaryIO:
        """Open the underlying bytes for reading."""
        if self.path is not None:
            return self.path.open("rb")
        if self.data is not None:
            return io.BytesIO(self.data)
        raise ValueError(f"No byte source attached to {self.name}")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of FileValidator. `reason` is set only when invalid."""

    valid: bool
    reason: str | None = None
    is_mbox: bool = False


@dataclass(frozen=True)
class UploadResult:
    """Successful transfer acknowledgement from the remote service."""

    identifier: str


@dataclass
class MboxParseStats:
    """Mutable counters for one MBOX parse."""

    total_bytes: int = 0
    bytes_consumed: int = 0
    messages_seen: int = 0
    messages_emitted: int = 0
    skipped_reasons: dict[str, int] = field(default_factory=dict)

    @property
    def messages_skipped(self) -> int:
        return sum(self.skipped_reasons.values())

    @property
    def parse_errors(self) -> int:
        return self.skipped_reasons.get("malformed", 0)

    def record_skip(self, reason: str) -> None:
        self.skipped_reasons[reason] = self.skipped_reasons.get(reason, 0) + 1


@dataclass
class TrackedFile:
    """Per-file lifecycle record owned by an UploadOrchestrator."""

    file_id: str
    source: SourceFile
    is_mbox: bool = False
    state: UploadState = UploadState.PENDING
    progress: float = 0.0
    phase: ProgressPhase | None = None
    indeterminate: bool = False
    error: str | None = None
    exception: EchoIngestorError | None = None
    remote_id: str | None = None
    parse_stats: MboxParseStats | None = None

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def size(self) -> int:
        return self.source.size

    @property
    def mime_type(self) -> str:
        return self.source.mime_type

    @property
    def rejected(self) -> bool:
        """True if the file never passed validation."""
        return isinstance(self.exception, ValidationError)


@dataclass
class UploadSummary:
    """Counts for a single orchestrator run."""

    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.cancelled


@dataclass(frozen=True)
class MailMessage:
    """A sent message extracted from an MBOX archive. Text content only."""

    message_id: str
    sender: str
    recipients: str
    subject: str
    date: datetime | None
    text: str
    start_offset: int
    end_offset: int
    content_hash: str
    # Records are emitted only for the owner's sent mail, so this is always True.
    sender_is_self: bool = True


# ---------------------------------------------------------------------------
# Content library
# ---------------------------------------------------------------------------


class KitType(str, Enum):
    VIDEOS = "videos"
    WRITTEN = "written"
    CAROUSELS = "carousels"


class ContentType(str, Enum):
    VIDEO = "video"
    WRITTEN = "written"
    CAROUSEL = "carousel"


@dataclass(frozen=True)
class ContentKit:
    """A generation result batch as delivered by the remote service.

    `kit_type` stays a plain string so that unknown types reach the normalizer
    and are rejected there instead of at parse time.
    """

    kit_id: str
    kit_type: str
    created_at: datetime
    items: tuple[dict[str, Any], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NormalizedContentItem:
    """Common projection of one content kit member."""

    item_id: str
    kit_id: str
    content_type: ContentType
    platform: str | None
    title: str
    text: str
    media_url: str | None
    created_at: datetime
    score: float | None = None


@dataclass(frozen=True)
class KitPage:
    """Raw response of a library fetch."""

    kits: tuple[ContentKit, ...]
    next_cursor: str | None = None
    total_hint: int = 0


@dataclass(frozen=True)
class LibraryPage:
    """A fetched, normalized page keyed by the cursor it was requested with."""

    cursor: str | None
    items: tuple[NormalizedContentItem, ...]
    next_cursor: str | None = None
    total_hint: int = 0


@dataclass(frozen=True)
class LibraryFilter:
    """Active library filter. Content type is server-side; the rest is local."""

    content_type: ContentType | None = None
    platform: str | None = None
    search: str = ""


class SortKey(str, Enum):
    RECENT = "recent"
    OLDEST = "oldest"
    SCORE = "score"


class GroupBy(str, Enum):
    NONE = "none"
    DATE = "date"
    PLATFORM = "platform"
    TYPE = "type"


@dataclass(frozen=True)
class ContentGroup:
    """A named bucket of the current library view."""

    key: str
    title: str
    items: tuple[NormalizedContentItem, ...]


@dataclass(frozen=True)
class LibraryStats:
    """Counts over the loaded collection, ignoring the active view."""

    total: int = 0
    videos: int = 0
    written: int = 0
    carousels: int = 0
    this_week: int = 0
    by_platform: dict[str, int] = field(default_factory=dict)


class FeedbackVerdict(str, Enum):
    GOOD = "good"
    BAD = "bad"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationPermission(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    DEFAULT = "default"


class EventCategory(str, Enum):
    COMPLETION = "completion"
    ERROR = "error"

    @property
    def tag(self) -> str:
        return "generation-complete" if self is EventCategory.COMPLETION else "generation-error"
