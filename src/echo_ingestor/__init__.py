"""Echo Ingestor - Upload source material, extract sent mail from MBOX archives, browse generated content."""

from echo_ingestor.core.models import (
    ContentGroup,
    ContentKit,
    MailMessage,
    NormalizedContentItem,
    SourceFile,
    TrackedFile,
    UploadState,
    UploadSummary,
)
from echo_ingestor.pipeline.library import ContentLibraryAggregator
from echo_ingestor.pipeline.orchestrator import UploadOrchestrator

__all__ = [
    "ContentGroup",
    "ContentKit",
    "ContentLibraryAggregator",
    "MailMessage",
    "NormalizedContentItem",
    "SourceFile",
    "TrackedFile",
    "UploadOrchestrator",
    "UploadState",
    "UploadSummary",
]
