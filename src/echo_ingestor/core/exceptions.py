"""Custom exceptions for the Echo Ingestor."""


class EchoIngestorError(Exception):
    """Base exception for all Echo Ingestor errors."""


class ValidationError(EchoIngestorError):
    """File rejected locally by type or size before any transfer."""


class TransferError(EchoIngestorError):
    """Upload transport failed or the remote service rejected the file."""


class TransferCancelledError(TransferError):
    """An in-flight transfer was explicitly cancelled."""


class ApiError(EchoIngestorError):
    """Remote API request failed or returned an unsuccessful envelope."""


class RateLimitError(ApiError):
    """Remote API rate limit exceeded after all retries."""


class ParseError(EchoIngestorError):
    """Failed to decode a single mail message. Recoverable: the message is skipped."""


class StreamReadError(ParseError):
    """The underlying byte stream failed. Fatal for the file being parsed."""


class NormalizationError(EchoIngestorError):
    """A raw content kit item could not be projected into the common shape."""


class UnknownKitTypeError(NormalizationError):
    """Content kit type has no known mapping."""


class AggregationFetchError(EchoIngestorError):
    """Failed to fetch a content library page."""


class RemovalBlockedError(EchoIngestorError):
    """A tracked file cannot be removed while it is uploading or parsing."""
