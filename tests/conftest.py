"""Shared fixtures: scripted source adapters, fixed clocks and a wired service."""
from __future__ import annotations

import asyncio
import copy
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Sequence

import pytest

from cvrag.auth import InMemoryAuthorizationProvider, SourceGrant
from cvrag.config import Settings
from cvrag.embeddings import HashingEmbeddingModel
from cvrag.llm import MockGenerator
from cvrag.models import BaseDocument, EducationEntry, Position, ProjectEntry, SourceName
from cvrag.profiles import InMemoryBaseDocumentStore
from cvrag.service import ProfileChatService
from cvrag.sources import GitHubAdapter, LinkedInAdapter, WebSearchAdapter, WebsiteAdapter
from cvrag.vectorstore import InMemoryVectorIndex

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
SUBJECT = "ada"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class ScriptedAdapterMixin:
    """Replace the network call with a canned payload and optional failures."""

    payload: Dict[str, Any]
    failures: List[BaseException]
    delay: float
    calls: int

    def script(
        self,
        payload: Dict[str, Any],
        *,
        failures: Iterable[BaseException] = (),
        delay: float = 0.0,
    ):
        self.payload = payload
        self.failures = list(failures)
        self.delay = delay
        self.calls = 0
        return self

    async def _fetch_payload(self, grant: SourceGrant) -> Dict[str, Any]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return copy.deepcopy(self.payload)


class ScriptedGitHub(ScriptedAdapterMixin, GitHubAdapter):
    pass


class ScriptedLinkedIn(ScriptedAdapterMixin, LinkedInAdapter):
    pass


class ScriptedWebsite(ScriptedAdapterMixin, WebsiteAdapter):
    pass


class ScriptedWebSearch(ScriptedAdapterMixin, WebSearchAdapter):
    pass


class KeywordEmbedder:
    """One dimension per vocabulary word; texts without known words embed to zero."""

    def __init__(self, vocabulary: Sequence[str], *, version: str = "keywords-v1") -> None:
        self.vocabulary = [word.lower() for word in vocabulary]
        self._version = version
        self.calls = 0

    @property
    def model_version(self) -> str:
        return self._version

    @property
    def dimension(self) -> int:
        return len(self.vocabulary)

    def _vector(self, text: str) -> List[float]:
        words = set(re.findall(r"[a-z0-9+#-]+", text.lower()))
        return [1.0 if word in words else 0.0 for word in self.vocabulary]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        return [self._vector(text) for text in texts]

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]


VOCABULARY = ["python", "kafka", "sql", "pipeline-kit", "engineer", "oxford", "etl", "mathematics"]


def github_payload() -> Dict[str, Any]:
    return {
        "profile": {
            "login": "ada",
            "name": "Ada Lovelace",
            "bio": "Builds data pipelines.",
            "html_url": "https://github.com/ada",
            "updated_at": "2025-03-10T12:00:00Z",
            "email": "ada@example.com",
        },
        "repositories": [
            {
                "name": "pipeline-kit",
                "description": "Streaming ETL toolkit",
                "language": "Python",
                "stargazers_count": 42,
                "html_url": "https://github.com/ada/pipeline-kit",
                "topics": ["etl", "streaming"],
                "pushed_at": "2025-03-01T00:00:00Z",
                "fork": False,
            },
            {"name": "someone-elses-compiler", "language": "C", "fork": True},
        ],
    }


def linkedin_payload() -> Dict[str, Any]:
    return {
        "profile": {
            "id": "li-ada",
            "first_name": "Ada",
            "headline": "Senior Data Engineer",
            "summary": "Designs reliable streaming platforms",
            "phone": "+44 20 0000 0000",
        },
        "positions": [
            {
                "title": "Data Engineer",
                "company": "Analytical Engines",
                "start_date": "2019-01",
                "end_date": "2021-06",
                "description": "Ran the Kafka clusters.",
            },
            {
                "title": "Senior Data Engineer",
                "company": "Difference Labs",
                "start_date": "2021-07",
                "is_current": True,
            },
        ],
        "skills": [{"name": "Python"}, {"name": "Kafka"}],
        "education": [],
        "certifications": [{"name": "CKA", "authority": "CNCF", "issued_at": "2024-02"}],
    }


def base_document(subject_id: str = SUBJECT) -> BaseDocument:
    return BaseDocument(
        subject_id=subject_id,
        full_name="Ada Lovelace",
        headline="Data Engineer",
        summary="Builds streaming data platforms",
        positions=(
            Position("Data Engineer", "Analytical Engines", "2019-01", "2021-09", "Owned the ETL pipelines."),
        ),
        skills=("Python", "SQL"),
        education=(EducationEntry("University of Oxford", "BSc Mathematics", "2012", "2015"),),
        projects=(ProjectEntry("pipeline-kit", "Streaming ETL toolkit", "https://github.com/ada/pipeline-kit"),),
        updated_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def documents() -> InMemoryBaseDocumentStore:
    store = InMemoryBaseDocumentStore()
    store.put(base_document())
    return store


@pytest.fixture
def authorization() -> InMemoryAuthorizationProvider:
    provider = InMemoryAuthorizationProvider()
    provider.grant(SUBJECT, SourceGrant(SourceName.GITHUB, token="gh-token", account="ada"))
    provider.grant(
        SUBJECT,
        SourceGrant(SourceName.LINKEDIN, token="li-token", account="li-ada", scopes=frozenset({"r_fullprofile"})),
    )
    return provider


@pytest.fixture
def make_adapters(settings: Settings) -> Callable[..., Dict[SourceName, Any]]:
    def factory(
        github: Dict[str, Any] | None = None,
        linkedin: Dict[str, Any] | None = None,
        **options: Any,
    ) -> Dict[SourceName, Any]:
        clock = lambda: FIXED_NOW  # noqa: E731
        return {
            SourceName.GITHUB: ScriptedGitHub(settings.source(SourceName.GITHUB), clock=clock).script(
                github if github is not None else github_payload(), **options.get("github_options", {})
            ),
            SourceName.LINKEDIN: ScriptedLinkedIn(settings.source(SourceName.LINKEDIN), clock=clock).script(
                linkedin if linkedin is not None else linkedin_payload(), **options.get("linkedin_options", {})
            ),
        }

    return factory


@pytest.fixture
def make_service(
    settings: Settings,
    documents: InMemoryBaseDocumentStore,
    authorization: InMemoryAuthorizationProvider,
    make_adapters: Callable[..., Dict[SourceName, Any]],
):
    def factory(**overrides: Any) -> ProfileChatService:
        options = {
            "adapters": make_adapters(),
            "authorization": authorization,
            "base_documents": documents,
            "embedder": HashingEmbeddingModel(384),
            "vector_index": InMemoryVectorIndex(),
            "generator": MockGenerator(),
        }
        options.update(overrides)
        service_settings = options.pop("settings", settings)
        return ProfileChatService(service_settings, **options)

    return factory
