"""Error taxonomy for syncing and querying.

File-level errors are recorded and never abort a sync run; run-level errors
move the profile into the ``error`` phase until the user retries.
"""

from __future__ import annotations

from typing import Sequence


class DocSyncError(Exception):
    """Base class for every error raised by docsync."""


class SourceUnreachable(DocSyncError):
    """The source (folder or remote drive) could not be listed."""


class ExtractionError(DocSyncError):
    """Base class for extraction failures of a single file."""


class ExtractionUnavailable(ExtractionError):
    """No converter is installed for the declared format."""

    def __init__(self, declared_format: str) -> None:
        self.declared_format = declared_format
        super().__init__(f"No extractor available for format {declared_format!r}")


class ExtractionFailed(ExtractionError):
    """The converter raised while turning bytes into text."""


class ProviderError(DocSyncError):
    """Base class for embedding provider failures."""


class ProviderUnavailable(ProviderError):
    """Model missing, network unreachable or call timed out. Retryable."""


class InvalidCredentials(ProviderError):
    """The remote provider rejected the API key. Not retryable."""


class ProviderResponseError(ProviderError):
    """The provider rejected the request or returned an unusable payload. Not retryable."""


class IndexWriteFailed(DocSyncError):
    """A write to the dual index was rolled back."""

    def __init__(self, message: str, chunk_ids: Sequence[str] = ()) -> None:
        self.chunk_ids = list(chunk_ids)
        super().__init__(message)


class DimensionMismatch(DocSyncError):
    """Vector dimension does not match the profile's active provider."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected vectors of dimension {expected}, got {actual}")


class ProfileNotFound(DocSyncError):
    """No profile with the requested id exists."""


class SyncAlreadyRunning(DocSyncError):
    """A sync for this profile is already active."""


class ChunkNotFound(DocSyncError):
    """No chunk with the requested id is stored in the profile."""
