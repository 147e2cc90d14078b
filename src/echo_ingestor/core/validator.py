"""File type/size validation with MBOX archive detection."""

from __future__ import annotations

import logging
from pathlib import PurePath

from echo_ingestor.core.models import SourceFile, ValidationResult

logger = logging.getLogger(__name__)

ACCEPTED_FILE_TYPES: dict[str, tuple[str, ...]] = {
    "application/pdf": (".pdf",),
    "video/mp4": (".mp4",),
    "video/quicktime": (".mov",),
    "text/plain": (".txt",),
    "image/jpeg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "audio/wav": (".wav",),
    "audio/mpeg": (".mp3",),
}

MBOX_MIME_TYPES = frozenset({"application/mbox", "application/x-mbox"})

MAX_FILE_SIZE = 500 * 1024 * 1024


def is_mbox(name: str, mime_type: str = "") -> bool:
    """Check whether a file is an MBOX archive by name or declared type."""
    basename = PurePath(name).name.lower()
    return (
        basename.endswith(".mbox")
        or basename == "mbox"
        or mime_type.lower() in MBOX_MIME_TYPES
    )


def validate_file(source: SourceFile) -> ValidationResult:
    """Validate a candidate file for upload.

    Rules, in order:
    1. MBOX archives are always accepted, whatever their size or declared type.
    2. The declared MIME type must be in ACCEPTED_FILE_TYPES.
    3. The size must not exceed MAX_FILE_SIZE.

    Args:
        source: The candidate file.

    Returns:
        ValidationResult with a human-readable reason when invalid.
    """
    if is_mbox(source.name, source.mime_type):
        return ValidationResult(valid=True, is_mbox=True)

    if source.mime_type not in ACCEPTED_FILE_TYPES:
        logger.warning("Rejected %s: unsupported type %r", source.name, source.mime_type)
        return ValidationResult(
            valid=False,
            reason=f"Unsupported type: {source.mime_type or 'unknown'}",
        )

    if source.size > MAX_FILE_SIZE:
        logger.warning("Rejected %s: %d bytes over limit", source.name, source.size)
        return ValidationResult(
            valid=False,
            reason=f"File size exceeds {format_file_size(MAX_FILE_SIZE)}",
        )

    return ValidationResult(valid=True)


def format_file_size(size: int) -> str:
    """Format a byte count as a short human-readable string, e.g. '500 MB'."""
    if size <= 0:
        return "0 Bytes"

    units = ("Bytes", "KB", "MB", "GB")
    value = float(size)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, 2):g} {units[exponent]}"
