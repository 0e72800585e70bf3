"""Process-wide configuration built once at start-up."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

from cvrag.models import SourceName

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "CVRAG_"


def _int_from_env(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(ENV_PREFIX + name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _float_from_env(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(ENV_PREFIX + name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


def _str_from_env(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True, slots=True)
class SourceSettings:
    """Quota, cache and endpoint configuration for one external source."""

    base_url: str
    max_requests_per_window: int
    window_seconds: float
    cache_ttl_seconds: int
    timeout_seconds: float = 10.0
    user_agent: str = "cvrag/0.1 (+profile enrichment)"

    @property
    def refill_rate(self) -> float:
        """Tokens added to the bucket per second."""

        if self.window_seconds <= 0:
            return float(self.max_requests_per_window)
        return self.max_requests_per_window / self.window_seconds


DEFAULT_SOURCES: dict[SourceName, SourceSettings] = {
    SourceName.GITHUB: SourceSettings(
        base_url="https://api.github.com",
        max_requests_per_window=5000,
        window_seconds=3600,
        cache_ttl_seconds=3600,
    ),
    SourceName.LINKEDIN: SourceSettings(
        base_url="https://api.linkedin.com",
        max_requests_per_window=100,
        window_seconds=86400,
        cache_ttl_seconds=7 * 86400,
    ),
    SourceName.WEBSITE: SourceSettings(
        base_url="",
        max_requests_per_window=30,
        window_seconds=60,
        cache_ttl_seconds=12 * 3600,
        timeout_seconds=15.0,
    ),
    SourceName.WEB_SEARCH: SourceSettings(
        base_url="https://api.search.brave.com/res/v1",
        max_requests_per_window=100,
        window_seconds=86400,
        cache_ttl_seconds=86400,
    ),
}


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable service configuration passed into every component."""

    sources: Mapping[SourceName, SourceSettings] = field(default_factory=lambda: dict(DEFAULT_SOURCES))

    # Enrichment
    max_parallelism: int = 4
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    rate_limit_timeout: float = 0.0

    # Chunking / indexing
    chunk_target_tokens: int = 250
    chunk_max_tokens: int = 300
    embed_batch_size: int = 16
    embed_timeout: float = 30.0
    embedding_backend: str = "hashing"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimension: int = 384
    vector_store: str = "memory"
    chroma_persist_dir: str = "chroma_db"
    chunk_grace_seconds: float = 3600.0

    # Retrieval
    retrieval_k: int = 4
    min_similarity: float = 0.2

    # Chat sessions
    session_idle_timeout: float = 1800.0
    session_rate_limit: int = 10
    session_rate_window: float = 60.0
    history_max_turns: int = 20
    prompt_history_turns: int = 6
    prompt_max_chars: int = 6000
    generation_backend: str = "mock"
    generation_timeout: float = 20.0
    message_timeout: float = 30.0

    def source(self, name: SourceName) -> SourceSettings:
        try:
            return self.sources[name]
        except KeyError:
            raise KeyError(f"No configuration for source {name.value!r}") from None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, *, dotenv: bool = True) -> "Settings":
        """Build settings from the environment (and ``.env`` when present)."""

        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        sources: dict[SourceName, SourceSettings] = {}
        for name, defaults in DEFAULT_SOURCES.items():
            key = name.value.upper()
            sources[name] = SourceSettings(
                base_url=_str_from_env(env, f"{key}_BASE_URL", defaults.base_url),
                max_requests_per_window=_int_from_env(
                    env, f"{key}_MAX_REQUESTS", defaults.max_requests_per_window
                ),
                window_seconds=_float_from_env(env, f"{key}_WINDOW_SECONDS", defaults.window_seconds),
                cache_ttl_seconds=_int_from_env(
                    env, f"{key}_CACHE_TTL_SECONDS", defaults.cache_ttl_seconds
                ),
                timeout_seconds=_float_from_env(env, f"{key}_TIMEOUT_SECONDS", defaults.timeout_seconds),
            )

        base = cls()
        return cls(
            sources=sources,
            max_parallelism=_int_from_env(env, "MAX_PARALLELISM", base.max_parallelism),
            retry_attempts=_int_from_env(env, "RETRY_ATTEMPTS", base.retry_attempts),
            retry_base_delay=_float_from_env(env, "RETRY_BASE_DELAY", base.retry_base_delay),
            retry_max_delay=_float_from_env(env, "RETRY_MAX_DELAY", base.retry_max_delay),
            rate_limit_timeout=_float_from_env(env, "RATE_LIMIT_TIMEOUT", base.rate_limit_timeout),
            chunk_target_tokens=_int_from_env(env, "CHUNK_TARGET_TOKENS", base.chunk_target_tokens),
            chunk_max_tokens=_int_from_env(env, "CHUNK_MAX_TOKENS", base.chunk_max_tokens),
            embed_batch_size=_int_from_env(env, "EMBED_BATCH_SIZE", base.embed_batch_size),
            embed_timeout=_float_from_env(env, "EMBED_TIMEOUT", base.embed_timeout),
            embedding_backend=_str_from_env(env, "EMBEDDING_BACKEND", base.embedding_backend).lower(),
            embedding_model=_str_from_env(env, "EMBEDDING_MODEL", base.embedding_model),
            embedding_dimension=_int_from_env(env, "EMBEDDING_DIMENSION", base.embedding_dimension),
            vector_store=_str_from_env(env, "VECTOR_STORE", base.vector_store).lower(),
            chroma_persist_dir=_str_from_env(env, "CHROMA_PERSIST_DIR", base.chroma_persist_dir),
            chunk_grace_seconds=_float_from_env(env, "CHUNK_GRACE_SECONDS", base.chunk_grace_seconds),
            retrieval_k=_int_from_env(env, "RETRIEVAL_K", base.retrieval_k),
            min_similarity=_float_from_env(env, "MIN_SIMILARITY", base.min_similarity),
            session_idle_timeout=_float_from_env(env, "SESSION_IDLE_TIMEOUT", base.session_idle_timeout),
            session_rate_limit=_int_from_env(env, "SESSION_RATE_LIMIT", base.session_rate_limit),
            session_rate_window=_float_from_env(env, "SESSION_RATE_WINDOW", base.session_rate_window),
            history_max_turns=_int_from_env(env, "HISTORY_MAX_TURNS", base.history_max_turns),
            prompt_history_turns=_int_from_env(env, "PROMPT_HISTORY_TURNS", base.prompt_history_turns),
            prompt_max_chars=_int_from_env(env, "PROMPT_MAX_CHARS", base.prompt_max_chars),
            generation_backend=_str_from_env(env, "GENERATION_BACKEND", base.generation_backend).lower(),
            generation_timeout=_float_from_env(env, "GENERATION_TIMEOUT", base.generation_timeout),
            message_timeout=_float_from_env(env, "MESSAGE_TIMEOUT", base.message_timeout),
        )


__all__ = ["DEFAULT_SOURCES", "Settings", "SourceSettings"]
