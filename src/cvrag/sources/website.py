"""Personal website adapter: scrapes headings and the text beneath them."""
from __future__ import annotations

from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Mapping

from bs4 import BeautifulSoup

from cvrag.auth import SourceGrant
from cvrag.errors import PermanentSourceError
from cvrag.models import Category, Fact, SourceName, SourceRecord, normalize_key
from cvrag.sources.base import SourceAdapter, clean_text, parse_datetime
from cvrag.validation import FieldGroup, SourceSchema

SITE_FIELDS = frozenset({"url", "title", "description", "updated_at"})
SECTION_FIELDS = frozenset({"heading", "text"})

MAX_SECTIONS = 25
MAX_SECTION_CHARS = 1500

# Heading keyword -> category; first match wins.
_HEADING_CATEGORIES = (
    (("experience", "career", "employment", "work history"), Category.EXPERIENCE),
    (("project", "portfolio", "open source", "work"), Category.PROJECTS),
    (("skill", "stack", "tools", "technologies"), Category.SKILLS),
    (("publication", "talk", "writing", "paper", "blog", "article"), Category.PUBLICATIONS),
    (("education", "degree", "university"), Category.EDUCATION),
    (("certification", "certificate"), Category.CERTIFICATIONS),
)


def categorize_heading(heading: str) -> Category:
    lowered = heading.lower()
    for keywords, category in _HEADING_CATEGORIES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return Category.SUMMARY


def parse_site(html: str, url: str) -> Dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "footer"]):
        tag.decompose()

    title = clean_text(soup.title.get_text()) if soup.title else ""
    description = ""
    meta = soup.find("meta", attrs={"name": "description"}) or soup.find("meta", attrs={"property": "og:description"})
    if meta is not None:
        description = clean_text(meta.get("content"))
    modified = soup.find("meta", attrs={"property": "article:modified_time"})

    sections: List[Dict[str, str]] = []
    for heading in soup.find_all(["h1", "h2", "h3"]):
        texts: List[str] = []
        for sibling in heading.find_next_siblings():
            if sibling.name in ("h1", "h2", "h3"):
                break
            text = clean_text(sibling.get_text(" "))
            if text:
                texts.append(text)
        body = " ".join(texts)[:MAX_SECTION_CHARS]
        label = clean_text(heading.get_text(" "))
        if label and body:
            sections.append({"heading": label, "text": body})
        if len(sections) >= MAX_SECTIONS:
            break

    site = {"url": url, "title": title, "description": description}
    if modified is not None and modified.get("content"):
        site["updated_at"] = modified.get("content")
    return {"site": site, "sections": sections}


def decode_website(payload: Mapping[str, Any], record: SourceRecord) -> List[Fact]:
    site = payload.get("site") or {}
    url = site.get("url")
    observed_at = parse_datetime(site.get("updated_at"))
    facts: List[Fact] = []

    description = clean_text(site.get("description"))
    if description:
        facts.append(
            Fact(
                category=Category.SUMMARY,
                key=normalize_key("website", "summary"),
                text=description,
                source=SourceName.WEBSITE,
                fetched_at=record.fetched_at,
                observed_at=observed_at,
                reference=url,
            )
        )

    for section in payload.get("sections") or []:
        heading = clean_text(section.get("heading"))
        text = clean_text(section.get("text"))
        if not heading or not text:
            continue
        facts.append(
            Fact(
                category=categorize_heading(heading),
                key=normalize_key("website", heading),
                text=f"{heading}: {text}",
                source=SourceName.WEBSITE,
                fetched_at=record.fetched_at,
                observed_at=observed_at,
                reference=url,
            )
        )
    return facts


class WebsiteAdapter(SourceAdapter):
    """``grant.account`` holds the site URL; the grant records the user's consent."""

    name = SourceName.WEBSITE
    schema_version = "1"

    async def _fetch_payload(self, grant: SourceGrant) -> Dict[str, Any]:
        url = grant.account
        if not url.startswith(("http://", "https://")):
            raise PermanentSourceError(self.name.value, f"not an http(s) URL: {url!r}")
        response = await self._request(url, headers={"Accept": "text/html,application/xhtml+xml"})
        payload = parse_site(response.text, str(response.url))
        last_modified = response.headers.get("last-modified")
        if last_modified and "updated_at" not in payload["site"]:
            payload["site"]["updated_at"] = _http_date(last_modified)
        return payload

    @classmethod
    def schema(cls) -> SourceSchema:
        return SourceSchema(
            source=cls.name,
            version=cls.schema_version,
            groups=(
                FieldGroup("site", SITE_FIELDS),
                FieldGroup("sections", SECTION_FIELDS, many=True),
            ),
            identity=(("site", "url"),),
            decoder=decode_website,
            max_items=MAX_SECTIONS,
        )


def _http_date(value: str) -> str | None:
    try:
        return parsedate_to_datetime(value).isoformat()
    except (TypeError, ValueError):
        return None


__all__ = ["WebsiteAdapter", "categorize_heading", "decode_website", "parse_site"]
