"""Base documents and the store of published profile versions."""
from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from cvrag.models import BaseDocument, Category, EnrichedProfile, Fact, SourceName, normalize_key
from cvrag.sources.base import clean_text, date_range, normalize_month, parse_datetime

LOGGER = logging.getLogger(__name__)


class BaseDocumentSource(Protocol):
    def get(self, subject_id: str) -> Optional[BaseDocument]:
        ...


class InMemoryBaseDocumentStore:
    def __init__(self) -> None:
        self._documents: Dict[str, BaseDocument] = {}
        self._lock = threading.Lock()

    def put(self, document: BaseDocument) -> None:
        with self._lock:
            self._documents[document.subject_id] = document

    def get(self, subject_id: str) -> Optional[BaseDocument]:
        with self._lock:
            return self._documents.get(subject_id)


def base_document_facts(document: BaseDocument, fetched_at: datetime) -> List[Fact]:
    """Decode the user's own CV into facts using the same keys as external sources."""

    observed = parse_datetime(document.updated_at)
    stamp = observed or fetched_at
    facts: List[Fact] = []

    def add(category: Category, key: str, text: str, **extra) -> None:
        if key and text:
            facts.append(
                Fact(
                    category=category,
                    key=key,
                    text=text,
                    source=SourceName.BASE_DOCUMENT,
                    fetched_at=stamp,
                    **extra,
                )
            )

    headline = clean_text(document.headline)
    summary = clean_text(document.summary)
    intro = ". ".join(part.rstrip(".") for part in (clean_text(document.full_name), headline, summary) if part)
    if intro:
        add(Category.SUMMARY, normalize_key("cv", "summary"), intro + ".", observed_at=observed)

    for position in document.positions:
        title = clean_text(position.title)
        organization = clean_text(position.organization)
        if not title or not organization:
            continue
        start = normalize_month(position.start_date)
        end = normalize_month(position.end_date)
        text = f"{title} at {organization}{date_range(start, end)}."
        description = clean_text(position.description)
        if description:
            text = f"{text} {description}"
        add(
            Category.EXPERIENCE,
            normalize_key(title, organization),
            text,
            observed_at=parse_datetime(end) if end else observed,
            attributes={"start_date": start or "", "end_date": end or "present"},
        )

    for skill in document.skills:
        name = clean_text(skill)
        add(Category.SKILLS, normalize_key(name), name, observed_at=observed)

    for entry in document.education:
        institution = clean_text(entry.institution)
        if not institution:
            continue
        degree = clean_text(entry.degree)
        start = normalize_month(entry.start_date)
        end = normalize_month(entry.end_date)
        text = f"{degree} at {institution}" if degree else institution
        add(
            Category.EDUCATION,
            normalize_key(institution, degree),
            f"{text}{date_range(start, end)}.",
            observed_at=parse_datetime(end),
            attributes={"start_date": start or "", "end_date": end or ""},
        )

    for project in document.projects:
        name = clean_text(project.name)
        description = clean_text(project.description)
        add(
            Category.PROJECTS,
            normalize_key(name),
            f"{name}: {description}" if description else name,
            observed_at=observed,
            reference=project.url,
        )

    for certification in document.certifications:
        name = clean_text(certification)
        add(Category.CERTIFICATIONS, normalize_key(name), name, observed_at=observed)
    return facts


class ProfileRepository:
    """Append-only store of immutable profile versions.

    A profile is fully built before :meth:`publish` assigns its version and
    makes it visible, so readers never see a partially merged snapshot.
    """

    def __init__(self) -> None:
        self._versions: Dict[str, List[EnrichedProfile]] = {}
        self._lock = threading.Lock()

    def publish(self, profile: EnrichedProfile) -> EnrichedProfile:
        with self._lock:
            history = self._versions.setdefault(profile.subject_id, [])
            version = history[-1].version + 1 if history else 1
            published = dataclasses.replace(profile, version=version)
            history.append(published)
        LOGGER.info("Published profile %s v%s", profile.subject_id, version)
        return published

    def get(self, subject_id: str, version: int | None = None) -> Optional[EnrichedProfile]:
        with self._lock:
            history = self._versions.get(subject_id) or []
            if not history:
                return None
            if version is None:
                return history[-1]
            for profile in history:
                if profile.version == version:
                    return profile
        return None

    def latest_version(self, subject_id: str) -> int:
        profile = self.get(subject_id)
        return profile.version if profile else 0

    def versions(self, subject_id: str) -> List[int]:
        with self._lock:
            return [profile.version for profile in self._versions.get(subject_id, [])]


__all__ = [
    "BaseDocumentSource",
    "InMemoryBaseDocumentStore",
    "ProfileRepository",
    "base_document_facts",
]
