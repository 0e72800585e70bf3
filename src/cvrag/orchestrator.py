"""Enrichment: fan out to sources, validate, merge and publish a profile version."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from cvrag.auth import AuthorizationProvider
from cvrag.cache import CacheStore, InMemoryCacheStore
from cvrag.config import Settings
from cvrag.errors import (
    BaseDocumentNotFound,
    PermanentError,
    RateLimitExceeded,
    SourceUnavailable,
    TransientSourceError,
)
from cvrag.models import (
    BaseDocument,
    Conflict,
    EnrichedProfile,
    Fact,
    Section,
    SourceAttribution,
    SourceName,
    SourceRecord,
    utcnow,
)
from cvrag.profiles import BaseDocumentSource, ProfileRepository, base_document_facts
from cvrag.ratelimit import Quota, RateLimiter, RetryPolicy
from cvrag.sources.base import SourceAdapter
from cvrag.telemetry import emit_enrichment_event, emit_exception, emit_source_event
from cvrag.validation import CleanRecord, Validator, Violation

LOGGER = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.9
EXTERNAL_CONFIDENCE = 0.6
CORROBORATION_BONUS = 0.1
CONFLICT_PENALTY = 0.6
RECENCY_HORIZON_DAYS = 365.0


@dataclass(frozen=True, slots=True)
class SourceError:
    """Diagnostic for one source that contributed nothing to the merge."""

    source: SourceName
    kind: str
    message: str
    attempts: int = 0


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    profile: EnrichedProfile
    errors: Tuple[SourceError, ...]
    sources_queried: int
    sources_successful: int
    cache_hits: int
    duration_ms: float
    violations: Tuple[Violation, ...] = ()

    @property
    def status(self) -> str:
        if self.sources_successful == self.sources_queried:
            return "completed"
        if self.sources_successful == 0:
            return "failed"
        return "partial"


class _Unauthorized(PermanentError):
    """No adapter or no valid grant for the requested source."""


@dataclass(slots=True)
class _SourceOutcome:
    source: SourceName
    clean: Optional[CleanRecord] = None
    error: Optional[SourceError] = None
    cache_hit: bool = False
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.clean is not None and self.error is None


def merge_facts(facts: Iterable[Fact]) -> List[Section]:
    """Group facts by ``(category, key)`` and fold each group into a section.

    Input order must already be deterministic; groups keep first-seen order
    within a category.
    """

    groups: Dict[Tuple[object, str], List[Fact]] = {}
    for fact in facts:
        groups.setdefault((fact.category, fact.key), []).append(fact)
    sections: List[Section] = []
    for (_, key), group in groups.items():
        for occurrence, bucket in enumerate(_split_repeats(group)):
            sections.append(_merge_group(bucket, key if occurrence == 0 else f"{key}#{occurrence + 1}"))
    sections.sort(key=lambda section: section.category.order)
    return sections


def _start_date(fact: Fact) -> str:
    return fact.attributes.get("start_date", "")


def _split_repeats(group: Sequence[Fact]) -> List[List[Fact]]:
    """Split a key group when one source repeats the key, e.g. two stints at one employer.

    The source with the most repeats anchors one bucket per fact; other
    sources join the bucket with the same start date, else the next free one.
    Exact duplicates from one source collapse.
    """

    by_source: Dict[SourceName, List[Fact]] = {}
    seen = set()
    for fact in group:
        signature = (fact.source, fact.text, tuple(sorted(fact.attributes.items())))
        if signature not in seen:
            seen.add(signature)
            by_source.setdefault(fact.source, []).append(fact)
    if all(len(items) == 1 for items in by_source.values()):
        return [[items[0] for items in by_source.values()]]

    anchors = max(by_source.values(), key=len)
    buckets = [[fact] for fact in sorted(anchors, key=lambda fact: (_start_date(fact), fact.text))]
    for items in by_source.values():
        if items is anchors:
            continue
        free = list(range(len(buckets)))
        for fact in sorted(items, key=lambda fact: (_start_date(fact), fact.text)):
            match = next((index for index in free if _start_date(buckets[index][0]) == _start_date(fact)), None)
            if match is None and free:
                match = free[0]
            if match is None:
                buckets.append([fact])
                continue
            free.remove(match)
            buckets[match].append(fact)
    return buckets


def _merge_group(group: Sequence[Fact], key: str | None = None) -> Section:
    ordered = sorted(group, key=lambda fact: (fact.source.priority, -fact.fetched_at.timestamp(), fact.text))
    primary = ordered[0]

    per_source: Dict[SourceName, Fact] = {}
    for fact in ordered:
        per_source.setdefault(fact.source, fact)
    attributions = tuple(
        SourceAttribution(
            source=fact.source,
            fetched_at=fact.fetched_at,
            observed_at=fact.observed_at,
            reference=fact.reference,
        )
        for fact in per_source.values()
    )

    attributes: Dict[str, str] = {}
    names = sorted({name for fact in ordered for name in fact.attributes})
    conflicts: List[Conflict] = []
    for name in names:
        values: List[Tuple[str, SourceName]] = []
        for fact in per_source.values():
            value = fact.attributes.get(name)
            if value and (value, fact.source) not in values:
                values.append((value, fact.source))
        if not values:
            continue
        attributes[name] = values[0][0]
        if len({value for value, _ in values}) > 1:
            conflicts.append(Conflict(attribute=name, values=tuple(values)))

    text = primary.text
    if conflicts:
        notes = []
        for conflict in conflicts:
            options = ", ".join(f"{value} ({source.display_name})" for value, source in conflict.values)
            notes.append(f"sources disagree on {conflict.attribute.replace('_', ' ')}: {options}")
        text = f"{text} Note: {'; '.join(notes)}."

    confidence = BASE_CONFIDENCE if SourceName.BASE_DOCUMENT in per_source else EXTERNAL_CONFIDENCE
    confidence = min(1.0, confidence + CORROBORATION_BONUS * (len(per_source) - 1))
    if conflicts:
        confidence *= CONFLICT_PENALTY

    return Section(
        category=primary.category,
        key=key or primary.key,
        text=text,
        attributions=attributions,
        confidence=round(confidence, 4),
        conflicts=tuple(conflicts),
        attributes=attributes,
    )


def quality_score(
    sections: Sequence[Section],
    outcomes: Sequence[_SourceOutcome],
    requested: int,
    now: datetime,
) -> float:
    successful = [outcome for outcome in outcomes if outcome.ok]
    coverage = len(successful) / requested if requested else 0.0

    recency_values: List[float] = []
    for outcome in successful:
        assert outcome.clean is not None
        stamps = [fact.observed_at for fact in outcome.clean.facts if fact.observed_at]
        newest = max(stamps) if stamps else outcome.clean.fetched_at
        age_days = max(0.0, (now - newest).total_seconds() / 86400.0)
        recency_values.append(max(0.0, 1.0 - age_days / RECENCY_HORIZON_DAYS))
    recency = sum(recency_values) / len(recency_values) if recency_values else 0.0

    corroborated = sum(1 for section in sections if len(section.sources) >= 2)
    corroboration = corroborated / len(sections) if sections else 0.0

    return round(100.0 * (0.5 * coverage + 0.25 * recency + 0.25 * corroboration), 2)


class Orchestrator:
    """Run enrichment jobs and publish immutable profile versions."""

    def __init__(
        self,
        settings: Settings,
        adapters: Mapping[SourceName, SourceAdapter],
        *,
        authorization: AuthorizationProvider,
        base_documents: BaseDocumentSource,
        repository: ProfileRepository | None = None,
        validator: Validator | None = None,
        cache: CacheStore | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._adapters = dict(adapters)
        self._authorization = authorization
        self._base_documents = base_documents
        self.repository = repository or ProfileRepository()
        self._validator = validator or Validator(adapter.schema() for adapter in self._adapters.values())
        self._cache = cache if cache is not None else InMemoryCacheStore()
        self._rate_limiter = rate_limiter or RateLimiter(
            {
                name.value: Quota(adapter.max_requests_per_window, adapter.settings.window_seconds)
                for name, adapter in self._adapters.items()
            }
        )
        self._retry = retry_policy or RetryPolicy(
            settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        self._clock = clock

    async def enrich(
        self,
        subject_id: str,
        sources: Iterable[SourceName] | None = None,
        base_document: BaseDocument | None = None,
        *,
        force_refresh: bool = False,
    ) -> EnrichmentResult:
        started = time.perf_counter()
        document = base_document or self._base_documents.get(subject_id)
        if document is None:
            raise BaseDocumentNotFound(f"No base document for subject {subject_id!r}")
        if document.subject_id != subject_id:
            raise BaseDocumentNotFound(
                f"Base document belongs to {document.subject_id!r}, not {subject_id!r}"
            )

        requested = self._requested_sources(sources)
        if force_refresh:
            self.invalidate(subject_id, requested)

        semaphore = asyncio.Semaphore(max(1, self._settings.max_parallelism))
        outcomes = await asyncio.gather(*(self._collect(subject_id, source, semaphore) for source in requested))

        now = self._clock()
        facts: List[Fact] = base_document_facts(document, now)
        for outcome in outcomes:
            if outcome.ok:
                assert outcome.clean is not None
                facts.extend(outcome.clean.facts)
        sections = merge_facts(facts)
        score = quality_score(sections, outcomes, len(requested), now)

        draft = EnrichedProfile(
            subject_id=subject_id,
            version=0,
            base_document=document,
            sections=tuple(sections),
            quality_score=score,
            last_merged=now,
        )
        profile = self.repository.publish(draft)

        result = EnrichmentResult(
            profile=profile,
            errors=tuple(outcome.error for outcome in outcomes if outcome.error is not None),
            sources_queried=len(requested),
            sources_successful=sum(1 for outcome in outcomes if outcome.ok),
            cache_hits=sum(1 for outcome in outcomes if outcome.cache_hit),
            duration_ms=(time.perf_counter() - started) * 1000,
            violations=tuple(violation for outcome in outcomes for violation in outcome.violations),
        )
        emit_enrichment_event(
            subject_id=subject_id,
            version=profile.version,
            status=result.status,
            quality_score=profile.quality_score,
            sources_queried=result.sources_queried,
            sources_successful=result.sources_successful,
            cache_hits=result.cache_hits,
            duration_ms=result.duration_ms,
            errors=[f"{error.source.value}:{error.kind}" for error in result.errors],
        )
        return result

    def invalidate(self, subject_id: str, sources: Iterable[SourceName] | None = None) -> int:
        """Drop cached responses, e.g. after the subject re-authorises a source."""

        targets = self._requested_sources(sources)
        removed = sum(1 for source in targets if self._cache.invalidate((source.value, subject_id)))
        LOGGER.info("Invalidated %s cached source(s) for %s", removed, subject_id)
        return removed

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()

    def _requested_sources(self, sources: Iterable[SourceName] | None) -> List[SourceName]:
        candidates = self._adapters.keys() if sources is None else sources
        unique = {SourceName(source) for source in candidates} - {SourceName.BASE_DOCUMENT}
        return sorted(unique, key=lambda source: source.priority)

    async def _collect(self, subject_id: str, source: SourceName, semaphore: asyncio.Semaphore) -> _SourceOutcome:
        outcome = _SourceOutcome(source=source)
        started = time.perf_counter()
        attempts = 0

        def count_attempt(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        async with semaphore:
            try:
                record, outcome.cache_hit = await self._fetch(subject_id, source, count_attempt)
            except _Unauthorized as error:
                outcome.error = SourceError(source, "unauthorized", str(error))
            except RateLimitExceeded as error:
                outcome.error = SourceError(source, "rate_limited", str(error), attempts)
            except SourceUnavailable as error:
                outcome.error = SourceError(source, "unavailable", str(error.__cause__ or error), error.attempts)
            except PermanentError as error:
                outcome.error = SourceError(source, "permanent", str(error), attempts)
            except Exception as error:  # bulkhead
                emit_exception(__name__, error, source=source.value, subject_id=subject_id)
                outcome.error = SourceError(source, "error", f"{error.__class__.__name__}: {error}", attempts)

        if outcome.error is None:
            clean, violations = self._validator.validate(record)
            outcome.violations = violations
            if clean.rejected:
                outcome.error = SourceError(source, "rejected", "; ".join(v.detail for v in violations), attempts)
            else:
                outcome.clean = clean

        emit_source_event(
            "source.fetch",
            source=source.value,
            subject_id=subject_id,
            duration_ms=(time.perf_counter() - started) * 1000,
            cache_hit=outcome.cache_hit,
            attempts=attempts,
            error=None if outcome.error is None else f"{outcome.error.kind}: {outcome.error.message}",
        )
        return outcome

    async def _fetch(
        self,
        subject_id: str,
        source: SourceName,
        on_attempt: Callable[[int], None],
    ) -> Tuple[SourceRecord, bool]:
        adapter = self._adapters.get(source)
        if adapter is None:
            raise _Unauthorized(f"no adapter configured for {source.value}")
        grant = self._authorization.get_grant(subject_id, source)
        if grant is None or grant.source is not source or not grant.is_valid(self._clock(), adapter.required_scope):
            raise _Unauthorized(f"no valid authorization grant for {source.value}")

        key = (source.value, subject_id)
        cached, hit = self._cache.get(key)
        if hit:
            return cached, True

        async def attempt() -> SourceRecord:
            await self._rate_limiter.acquire(source.value, grant.account, timeout=self._settings.rate_limit_timeout)
            try:
                return await asyncio.wait_for(
                    adapter.fetch(subject_id, grant),
                    timeout=adapter.settings.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise TransientSourceError(source.value, "deadline exceeded", cause=exc) from exc

        record = await self._retry.run(attempt, description=f"{source.value} fetch", on_attempt=on_attempt)
        self._cache.put(key, record, record.ttl_seconds)
        return record, False


__all__ = ["EnrichmentResult", "Orchestrator", "SourceError", "merge_facts", "quality_score"]
