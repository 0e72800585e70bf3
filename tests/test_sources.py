from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from conftest import FIXED_NOW, github_payload

from cvrag.auth import SourceGrant
from cvrag.config import Settings
from cvrag.errors import PermanentSourceError, TransientSourceError
from cvrag.models import Category, SourceName
from cvrag.sources import (
    GitHubAdapter,
    LinkedInAdapter,
    WebSearchAdapter,
    WebsiteAdapter,
    build_adapters,
    default_schemas,
)
from cvrag.sources.base import date_range, normalize_month, parse_datetime
from cvrag.sources.website import categorize_heading, parse_site
from cvrag.validation import Validator

SITE_HTML = """
<html>
  <head>
    <title>Ada Lovelace</title>
    <meta name="description" content="Data engineer writing about streaming systems.">
    <script>var tracking = true;</script>
  </head>
  <body>
    <nav>Home | Blog</nav>
    <h1>About</h1>
    <p>I build data platforms.</p>
    <h2>Projects</h2>
    <p>pipeline-kit, a streaming ETL toolkit.</p>
    <ul><li>Schema registry tooling</li></ul>
    <h2>Talks</h2>
    <p>Kafka at scale, PyCon 2024.</p>
    <h2>Empty</h2>
  </body>
</html>
"""


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _clock() -> datetime:
    return FIXED_NOW


@pytest.mark.anyio
async def test_github_adapter_fetches_profile_and_repositories() -> None:
    seen = []
    payload = github_payload()

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/users/ada":
            return httpx.Response(200, json=payload["profile"])
        if request.url.path == "/users/ada/repos":
            return httpx.Response(200, json=payload["repositories"])
        return httpx.Response(404)

    settings = Settings().source(SourceName.GITHUB)
    async with _client(handler) as client:
        adapter = GitHubAdapter(settings, client, clock=_clock)
        record = await adapter.fetch("ada", SourceGrant(SourceName.GITHUB, token="secret", account="ada"))

    assert record.source is SourceName.GITHUB
    assert record.fetched_at == FIXED_NOW
    assert record.ttl_seconds == settings.cache_ttl_seconds
    assert record.payload["profile"]["login"] == "ada"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert seen[1].url.params["sort"] == "pushed"

    clean, _ = Validator(default_schemas()).validate(record)
    projects = [fact for fact in clean.facts if fact.category is Category.PROJECTS]
    assert [fact.key for fact in projects] == ["pipeline kit"]
    assert projects[0].attributes == {"language": "Python"}
    assert projects[0].reference == "https://github.com/ada/pipeline-kit"
    skills = [fact.text for fact in clean.facts if fact.category is Category.SKILLS]
    assert skills == ["Python (used in 1 public repository)"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [(429, TransientSourceError), (503, TransientSourceError), (404, PermanentSourceError), (401, PermanentSourceError)],
)
async def test_http_status_is_classified(status: int, error_type: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status)

    async with _client(handler) as client:
        adapter = GitHubAdapter(Settings().source(SourceName.GITHUB), client)
        with pytest.raises(error_type) as excinfo:
            await adapter.fetch("ada", SourceGrant(SourceName.GITHUB, token="", account="ada"))

    assert excinfo.value.status_code == status


@pytest.mark.anyio
async def test_transport_failures_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        adapter = LinkedInAdapter(Settings().source(SourceName.LINKEDIN), client)
        with pytest.raises(TransientSourceError):
            await adapter.fetch("ada", SourceGrant(SourceName.LINKEDIN, token="t", account="li-ada"))


@pytest.mark.anyio
async def test_invalid_json_is_permanent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>not json</html>")

    async with _client(handler) as client:
        adapter = LinkedInAdapter(Settings().source(SourceName.LINKEDIN), client)
        with pytest.raises(PermanentSourceError):
            await adapter.fetch("ada", SourceGrant(SourceName.LINKEDIN, token="t", account="li-ada"))


@pytest.mark.anyio
async def test_linkedin_adapter_uses_member_token() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["Authorization"]
        captured["path"] = request.url.path
        return httpx.Response(200, json={"profile": {"id": "li-ada"}, "positions": []})

    async with _client(handler) as client:
        adapter = LinkedInAdapter(Settings().source(SourceName.LINKEDIN), client)
        record = await adapter.fetch("ada", SourceGrant(SourceName.LINKEDIN, token="member", account="li-ada"))

    assert captured == {"auth": "Bearer member", "path": "/v2/me"}
    assert record.payload["profile"]["id"] == "li-ada"


@pytest.mark.anyio
async def test_website_adapter_scrapes_sections() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            text=SITE_HTML,
            headers={"Last-Modified": "Tue, 04 Mar 2025 10:00:00 GMT", "Content-Type": "text/html"},
        )

    async with _client(handler) as client:
        adapter = WebsiteAdapter(Settings().source(SourceName.WEBSITE), client, clock=_clock)
        record = await adapter.fetch("ada", SourceGrant(SourceName.WEBSITE, token="", account="https://ada.dev/"))

    site = record.payload["site"]
    assert site["title"] == "Ada Lovelace"
    assert site["description"] == "Data engineer writing about streaming systems."
    assert site["updated_at"].startswith("2025-03-04T10:00:00")
    headings = [section["heading"] for section in record.payload["sections"]]
    assert headings == ["About", "Projects", "Talks"]
    assert "Schema registry tooling" in record.payload["sections"][1]["text"]

    clean, _ = Validator(default_schemas()).validate(record)
    by_key = {fact.key: fact for fact in clean.facts}
    assert by_key["website|projects"].category is Category.PROJECTS
    assert by_key["website|talks"].category is Category.PUBLICATIONS
    assert by_key["website|summary"].observed_at == datetime(2025, 3, 4, 10, tzinfo=timezone.utc)


@pytest.mark.anyio
async def test_website_adapter_rejects_non_http_urls() -> None:
    adapter = WebsiteAdapter(Settings().source(SourceName.WEBSITE))
    with pytest.raises(PermanentSourceError):
        await adapter.fetch("ada", SourceGrant(SourceName.WEBSITE, token="", account="file:///etc/passwd"))


@pytest.mark.anyio
async def test_web_search_adapter_collects_mentions() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Subscription-Token"] == "key"
        assert request.url.params["q"] == "Ada Lovelace data engineer"
        body = {
            "web": {
                "results": [
                    {
                        "title": "Streaming at scale",
                        "url": "https://conf.example/talks/ada",
                        "description": "Ada Lovelace on Kafka.",
                        "page_age": "2024-11-02T00:00:00",
                        "profile": {"img": "tracking"},
                    },
                    {"title": "", "url": "https://empty.example"},
                ]
            }
        }
        return httpx.Response(200, content=json.dumps(body).encode())

    async with _client(handler) as client:
        adapter = WebSearchAdapter(Settings().source(SourceName.WEB_SEARCH), client, clock=_clock)
        record = await adapter.fetch(
            "ada", SourceGrant(SourceName.WEB_SEARCH, token="key", account="Ada Lovelace data engineer")
        )

    clean, violations = Validator(default_schemas()).validate(record)
    assert [fact.text for fact in clean.facts] == ["Streaming at scale: Ada Lovelace on Kafka."]
    assert clean.facts[0].category is Category.MENTIONS
    assert any(violation.field == "results[0].profile" for violation in violations)


def test_build_adapters_shares_client() -> None:
    client = httpx.AsyncClient()
    adapters = build_adapters(Settings(), client)

    assert set(adapters) == {SourceName.GITHUB, SourceName.LINKEDIN, SourceName.WEBSITE, SourceName.WEB_SEARCH}
    assert all(adapter._get_client() is client for adapter in adapters.values())
    assert adapters[SourceName.LINKEDIN].required_scope == "r_fullprofile"


def test_date_helpers() -> None:
    assert normalize_month("2021-6") == "2021-06"
    assert normalize_month("2019") == "2019-01"
    assert normalize_month("not a date") is None
    assert parse_datetime("2025-03-10T12:00:00Z") == datetime(2025, 3, 10, 12, tzinfo=timezone.utc)
    assert date_range("2019-01", None) == " (2019-01 to present)"
    assert date_range(None, None) == ""


def test_heading_categories_default_to_summary() -> None:
    assert categorize_heading("Work Experience") is Category.EXPERIENCE
    assert categorize_heading("Hello there") is Category.SUMMARY
    assert parse_site("<html><body></body></html>", "https://ada.dev")["sections"] == []
