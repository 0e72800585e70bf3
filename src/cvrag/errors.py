"""Exception taxonomy shared by the enrichment, indexing and chat layers."""
from __future__ import annotations


class CVRagError(RuntimeError):
    """Base class for every error raised by the package."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class TransientError(CVRagError):
    """A retryable availability failure (network, 5xx, 429, deadline)."""


class PermanentError(CVRagError):
    """A failure that will not go away by retrying."""


class TransientSourceError(TransientError):
    def __init__(self, source: str, message: str, *, status_code: int | None = None, cause: Exception | None = None) -> None:
        super().__init__(f"{source}: {message}", cause=cause)
        self.source = source
        self.status_code = status_code


class PermanentSourceError(PermanentError):
    def __init__(self, source: str, message: str, *, status_code: int | None = None, cause: Exception | None = None) -> None:
        super().__init__(f"{source}: {message}", cause=cause)
        self.source = source
        self.status_code = status_code


class TransientEmbeddingError(TransientError):
    """Raised when the embedding collaborator is temporarily unavailable."""


class RateLimitExceeded(CVRagError):
    """Raised when a token bucket cannot grant a request within the allowed wait."""

    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded for {key}; retry after {retry_after:.2f}s")
        self.key = key
        self.retry_after = retry_after


class SourceUnavailable(CVRagError):
    """Raised when retries for a transient failure are exhausted."""

    def __init__(self, message: str, *, attempts: int, cause: Exception | None = None) -> None:
        super().__init__(message, cause=cause)
        self.attempts = attempts


class BaseDocumentNotFound(CVRagError):
    """The authoritative base document for a subject is missing."""


class IndexVersionMismatch(CVRagError):
    """A search targeted an index built for another profile or model version."""


class SessionNotFound(CVRagError):
    """The chat session is unknown or already closed."""


class SessionExpired(SessionNotFound):
    """The chat session timed out after inactivity."""


class TooManyRequests(CVRagError):
    """The chat session exceeded its message rate limit."""

    def __init__(self, session_id: str, retry_after: float) -> None:
        super().__init__(f"Session {session_id} exceeded its message rate limit")
        self.session_id = session_id
        self.retry_after = retry_after


class GenerationError(CVRagError):
    """The generation collaborator failed to produce an answer."""


__all__ = [
    "BaseDocumentNotFound",
    "CVRagError",
    "GenerationError",
    "IndexVersionMismatch",
    "PermanentError",
    "PermanentSourceError",
    "RateLimitExceeded",
    "SessionExpired",
    "SessionNotFound",
    "SourceUnavailable",
    "TooManyRequests",
    "TransientEmbeddingError",
    "TransientError",
    "TransientSourceError",
]
