"""Common exceptions for vector index backends."""
from __future__ import annotations

from cvrag.errors import CVRagError


class VectorStoreUnavailableError(CVRagError):
    """Raised when the vector index backend cannot be initialised or queried."""


__all__ = ["VectorStoreUnavailableError"]
