"""Shared plumbing for external profile sources."""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional

import httpx

from cvrag.auth import SourceGrant
from cvrag.config import SourceSettings
from cvrag.errors import PermanentSourceError, TransientSourceError
from cvrag.models import SourceName, SourceRecord, utcnow
from cvrag.validation import SourceSchema

LOGGER = logging.getLogger(__name__)

_YEAR_MONTH_RE = re.compile(r"^(\d{4})(?:-(\d{1,2}))?")


def classify_status(source: SourceName, response: httpx.Response) -> None:
    """Raise the matching error for a non-success HTTP response."""

    status = response.status_code
    if status < 400:
        return
    detail = f"HTTP {status}"
    if status == 429 or status >= 500:
        raise TransientSourceError(source.value, detail, status_code=status)
    raise PermanentSourceError(source.value, detail, status_code=status)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO timestamps and ``YYYY``/``YYYY-MM`` dates into aware datetimes."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        match = _YEAR_MONTH_RE.match(text)
        if not match:
            return None
        month = int(match.group(2) or 1)
        if not 1 <= month <= 12:
            return None
        return datetime(int(match.group(1)), month, 1, tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_month(value: Any) -> Optional[str]:
    """Render a date-like value as ``YYYY-MM`` so sources can be compared."""

    parsed = parse_datetime(value)
    return f"{parsed:%Y-%m}" if parsed else None


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def date_range(start: Optional[str], end: Optional[str]) -> str:
    if not start and not end:
        return ""
    return f" ({start or '?'} to {end or 'present'})"


class SourceAdapter(ABC):
    """Fetch one external source for a subject and decode it into facts.

    Adapters only talk to the network; rate limiting, caching and retries are
    applied around them by the orchestrator.
    """

    name: ClassVar[SourceName]
    schema_version: ClassVar[str] = "1"
    required_scope: ClassVar[Optional[str]] = None

    def __init__(
        self,
        settings: SourceSettings,
        client: httpx.AsyncClient | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    @property
    def max_requests_per_window(self) -> int:
        return self.settings.max_requests_per_window

    @property
    def ttl_seconds(self) -> int:
        return self.settings.cache_ttl_seconds

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=self.settings.timeout_seconds,
                headers={"User-Agent": self.settings.user_agent},
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def fetch(self, subject_id: str, grant: SourceGrant) -> SourceRecord:
        payload = await self._fetch_payload(grant)
        return SourceRecord(
            source=self.name,
            subject_id=subject_id,
            fetched_at=self._clock(),
            payload=payload,
            ttl_seconds=self.ttl_seconds,
            schema_version=self.schema_version,
        )

    async def _request(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        client = self._get_client()
        try:
            response = await client.get(url, params=params, headers=headers, timeout=self.settings.timeout_seconds)
        except httpx.TimeoutException as exc:
            raise TransientSourceError(self.name.value, "request timed out", cause=exc) from exc
        except httpx.TransportError as exc:
            raise TransientSourceError(self.name.value, f"transport error: {exc}", cause=exc) from exc
        LOGGER.debug("GET %s -> %s", url, response.status_code)
        classify_status(self.name, response)
        return response

    async def _get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        response = await self._request(url, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentSourceError(self.name.value, "response is not valid JSON", cause=exc) from exc

    @abstractmethod
    async def _fetch_payload(self, grant: SourceGrant) -> Dict[str, Any]:
        """Return the raw payload; validation happens downstream."""

    @classmethod
    @abstractmethod
    def schema(cls) -> SourceSchema:
        """Allow-list and decoder for this source's payload."""


__all__ = [
    "SourceAdapter",
    "classify_status",
    "clean_text",
    "date_range",
    "normalize_month",
    "parse_datetime",
]
