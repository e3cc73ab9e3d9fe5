"""
Exception types for the ingestion pipeline.

Grouped by how the task processor treats them:
- fatal-to-task: MediaDownloadError, VaultWriteError, GitSyncError
- recoverable-with-fallback: MetadataGenerationError
"""


class IngestError(Exception):
    """Base class for all ingestion pipeline errors."""
    pass


class MediaDownloadError(IngestError):
    """Raised when media attached to a message cannot be fetched."""
    pass


class VaultWriteError(IngestError):
    """Raised when a note or asset file cannot be written to the vault."""
    pass


class GitSyncError(IngestError):
    """Raised when a git command sequence against the vault fails."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class MetadataGenerationError(IngestError):
    """Raised when the completion service could not produce note metadata."""
    pass


class TelegramAPIError(IngestError):
    """Raised when the Telegram Bot API answers with ok=false or an HTTP error."""
    pass
