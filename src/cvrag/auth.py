"""Per-source consent grants supplied by the authorization collaborator."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Protocol, Tuple

from cvrag.models import SourceName, utcnow


@dataclass(frozen=True, slots=True)
class SourceGrant:
    """OAuth token or consent record allowing one source to be queried.

    ``account`` identifies the remote identity the grant is for: a GitHub
    login, a LinkedIn member id, a website URL or a web-search query.
    """

    source: SourceName
    token: str
    account: str
    scopes: frozenset[str] = field(default_factory=frozenset)
    expires_at: Optional[datetime] = None

    def is_valid(self, now: datetime | None = None, required_scope: str | None = None) -> bool:
        now = now or utcnow()
        if not self.account:
            return False
        if self.expires_at is not None and self.expires_at <= now:
            return False
        if required_scope and required_scope not in self.scopes:
            return False
        return True


class AuthorizationProvider(Protocol):
    def get_grant(self, subject_id: str, source: SourceName) -> Optional[SourceGrant]:
        ...


class InMemoryAuthorizationProvider:
    """Grant registry for development and tests."""

    def __init__(self) -> None:
        self._grants: Dict[Tuple[str, SourceName], SourceGrant] = {}
        self._lock = threading.Lock()

    def grant(self, subject_id: str, grant: SourceGrant) -> None:
        with self._lock:
            self._grants[(subject_id, grant.source)] = grant

    def revoke(self, subject_id: str, source: SourceName) -> bool:
        with self._lock:
            return self._grants.pop((subject_id, source), None) is not None

    def get_grant(self, subject_id: str, source: SourceName) -> Optional[SourceGrant]:
        with self._lock:
            return self._grants.get((subject_id, source))


__all__ = ["AuthorizationProvider", "InMemoryAuthorizationProvider", "SourceGrant"]
