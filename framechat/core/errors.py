"""
Exceptions shared between the core and the infrastructure adapters.

The adapters raise these so the core can decide what is fatal, what is
an idempotent skip and what degrades to a sentinel, without importing
boto3 or the Anthropic SDK.
"""


class VideoNotFoundError(Exception):
    """Raised when a video doesn't exist, was removed, or isn't visible to the caller."""
    pass


class VideoAccessDeniedError(Exception):
    """Raised when a user touches a video owned by someone else."""
    pass


class VideoRejectedError(ValueError):
    """Raised when an upload fails validation (too long, no frames, ...)."""
    pass


class ChatNotReadyError(Exception):
    """Raised when a question arrives before any frame of the video is available."""
    pass


class OperationTimeoutError(Exception):
    """Raised when an external call keeps timing out after its retries."""
    pass


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------

class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


class ObjectExistsError(StorageError):
    """
    The target path already holds an object.

    Paths are deterministic, so this usually means a retried upload.
    Callers treat it as success and resolve the existing object's URL.
    """
    pass


class StoragePermissionError(StorageError):
    """The storage provider refused the write (credentials or bucket policy)."""
    pass


class StorageQuotaError(StorageError):
    """The object is larger than the provider accepts, or the quota is used up."""
    pass


# ---------------------------------------------------------------------------
# Completion providers
# ---------------------------------------------------------------------------

class CompletionProviderError(Exception):
    """Raised when a model call fails."""
    pass


class RateLimitExceeded(CompletionProviderError):
    """Raised when we hit rate limits."""
    pass
