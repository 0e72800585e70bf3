"""Web search adapter collecting public mentions of the subject."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping

from cvrag.auth import SourceGrant
from cvrag.errors import PermanentSourceError
from cvrag.models import Category, Fact, SourceName, SourceRecord, normalize_key
from cvrag.sources.base import SourceAdapter, clean_text, parse_datetime
from cvrag.validation import FieldGroup, SourceSchema

QUERY_FIELDS = frozenset({"text"})
RESULT_FIELDS = frozenset({"title", "url", "description", "page_age"})
MAX_RESULTS = 10


def decode_web_search(payload: Mapping[str, Any], record: SourceRecord) -> List[Fact]:
    facts: List[Fact] = []
    for result in payload.get("results") or []:
        url = clean_text(result.get("url"))
        title = clean_text(result.get("title"))
        if not url or not title:
            continue
        description = clean_text(result.get("description"))
        facts.append(
            Fact(
                category=Category.MENTIONS,
                key=normalize_key(url),
                text=f"{title}: {description}" if description else title,
                source=SourceName.WEB_SEARCH,
                fetched_at=record.fetched_at,
                observed_at=parse_datetime(result.get("page_age")),
                reference=url,
            )
        )
    return facts


class WebSearchAdapter(SourceAdapter):
    """``grant.account`` is the query string, ``grant.token`` the search API key."""

    name = SourceName.WEB_SEARCH
    schema_version = "1"

    async def _fetch_payload(self, grant: SourceGrant) -> Dict[str, Any]:
        base = self.settings.base_url.rstrip("/")
        data = await self._get_json(
            f"{base}/web/search",
            params={"q": grant.account, "count": MAX_RESULTS},
            headers={"Accept": "application/json", "X-Subscription-Token": grant.token},
        )
        if not isinstance(data, dict):
            raise PermanentSourceError(self.name.value, "unexpected search response shape")
        web = data.get("web") or {}
        results = web.get("results") if isinstance(web, dict) else None
        return {"query": {"text": grant.account}, "results": results or []}

    @classmethod
    def schema(cls) -> SourceSchema:
        return SourceSchema(
            source=cls.name,
            version=cls.schema_version,
            groups=(
                FieldGroup("query", QUERY_FIELDS),
                FieldGroup("results", RESULT_FIELDS, many=True),
            ),
            identity=(("query", "text"),),
            decoder=decode_web_search,
            max_items=MAX_RESULTS,
        )


__all__ = ["WebSearchAdapter", "decode_web_search"]
