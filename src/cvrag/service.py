"""Service facade wiring enrichment, indexing, retrieval and chat together."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Mapping

import httpx

from cvrag.auth import AuthorizationProvider, InMemoryAuthorizationProvider
from cvrag.chunking import ChunkingConfig, ProfileChunker
from cvrag.config import Settings
from cvrag.embeddings import EmbeddingProvider, embedding_model_from_settings
from cvrag.indexing import IndexBuildResult, IndexingPipeline
from cvrag.llm import Generator, get_generator
from cvrag.models import SourceName
from cvrag.orchestrator import EnrichmentResult, Orchestrator
from cvrag.profiles import BaseDocumentSource, InMemoryBaseDocumentStore, ProfileRepository
from cvrag.ratelimit import RetryPolicy
from cvrag.retrieval import RetrievalEngine
from cvrag.sessions import SessionManager
from cvrag.sources import SourceAdapter, build_adapters
from cvrag.vectorstore import IndexRegistry, VectorIndex, build_vector_index

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RefreshResult:
    enrichment: EnrichmentResult
    index: IndexBuildResult


class ProfileChatService:
    """Own one instance of every component, built from a single :class:`Settings`."""

    def __init__(
        self,
        settings: Settings,
        *,
        adapters: Mapping[SourceName, SourceAdapter] | None = None,
        authorization: AuthorizationProvider | None = None,
        base_documents: BaseDocumentSource | None = None,
        embedder: EmbeddingProvider | None = None,
        vector_index: VectorIndex | None = None,
        generator: Generator | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.authorization = authorization if authorization is not None else InMemoryAuthorizationProvider()
        self.base_documents = base_documents if base_documents is not None else InMemoryBaseDocumentStore()
        self.profiles = ProfileRepository()
        self.registry = IndexRegistry()

        self.orchestrator = Orchestrator(
            settings,
            adapters if adapters is not None else build_adapters(settings, http_client),
            authorization=self.authorization,
            base_documents=self.base_documents,
            repository=self.profiles,
        )

        self.embedder = embedder if embedder is not None else embedding_model_from_settings(settings)
        self.vector_index = vector_index if vector_index is not None else build_vector_index(settings)
        self.indexing = IndexingPipeline(
            self.embedder,
            self.vector_index,
            self.registry,
            chunker=ProfileChunker(ChunkingConfig(settings.chunk_target_tokens, settings.chunk_max_tokens)),
            retry_policy=RetryPolicy(
                settings.retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            batch_size=settings.embed_batch_size,
            embed_timeout=settings.embed_timeout,
            grace_seconds=settings.chunk_grace_seconds,
        )
        self.retrieval = RetrievalEngine(
            self.embedder,
            self.vector_index,
            self.registry,
            min_similarity=settings.min_similarity,
            default_k=settings.retrieval_k,
        )
        self.sessions = SessionManager(
            self.retrieval,
            generator if generator is not None else get_generator(settings.generation_backend),
            self.profiles,
            self.registry,
            idle_timeout=settings.session_idle_timeout,
            rate_limit=settings.session_rate_limit,
            rate_window=settings.session_rate_window,
            history_max_turns=settings.history_max_turns,
            prompt_history_turns=settings.prompt_history_turns,
            prompt_max_chars=settings.prompt_max_chars,
            retrieval_k=settings.retrieval_k,
            generation_timeout=settings.generation_timeout,
            message_timeout=settings.message_timeout,
        )

    async def refresh(
        self,
        subject_id: str,
        sources: Iterable[SourceName] | None = None,
        *,
        force_refresh: bool = False,
    ) -> RefreshResult:
        """Enrich the profile and publish an index for the new version."""

        enrichment = await self.orchestrator.enrich(subject_id, sources, force_refresh=force_refresh)
        index = await self.indexing.build_index(enrichment.profile)
        return RefreshResult(enrichment=enrichment, index=index)

    async def aclose(self) -> None:
        await self.orchestrator.aclose()


@lru_cache()
def get_service() -> ProfileChatService:
    """Return the process-wide service built from environment settings."""

    return ProfileChatService(Settings.from_env())


def reset_service_cache() -> None:
    """Clear the cached service (primarily for testing)."""

    get_service.cache_clear()


__all__ = ["ProfileChatService", "RefreshResult", "get_service", "reset_service_cache"]
