"""External profile source adapters."""
from __future__ import annotations

from typing import Dict, List, Type

import httpx

from cvrag.config import Settings
from cvrag.models import SourceName
from cvrag.sources.base import SourceAdapter
from cvrag.sources.github import GitHubAdapter
from cvrag.sources.linkedin import LinkedInAdapter
from cvrag.sources.web_search import WebSearchAdapter
from cvrag.sources.website import WebsiteAdapter
from cvrag.validation import SourceSchema

ADAPTER_TYPES: Dict[SourceName, Type[SourceAdapter]] = {
    SourceName.GITHUB: GitHubAdapter,
    SourceName.LINKEDIN: LinkedInAdapter,
    SourceName.WEBSITE: WebsiteAdapter,
    SourceName.WEB_SEARCH: WebSearchAdapter,
}


def build_adapters(settings: Settings, client: httpx.AsyncClient | None = None) -> Dict[SourceName, SourceAdapter]:
    """Instantiate every configured adapter, sharing one HTTP client."""

    return {
        name: adapter_type(settings.source(name), client)
        for name, adapter_type in ADAPTER_TYPES.items()
        if name in settings.sources
    }


def default_schemas() -> List[SourceSchema]:
    return [adapter_type.schema() for adapter_type in ADAPTER_TYPES.values()]


__all__ = [
    "ADAPTER_TYPES",
    "GitHubAdapter",
    "LinkedInAdapter",
    "SourceAdapter",
    "WebSearchAdapter",
    "WebsiteAdapter",
    "build_adapters",
    "default_schemas",
]
