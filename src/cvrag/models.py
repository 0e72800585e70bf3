"""Core data model for enrichment, indexing and chat."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class SourceName(str, Enum):
    """Where a piece of profile data came from, in merge-priority order."""

    BASE_DOCUMENT = "base_document"
    LINKEDIN = "linkedin"
    GITHUB = "github"
    WEBSITE = "website"
    WEB_SEARCH = "web_search"

    @property
    def priority(self) -> int:
        """Lower values win when claims disagree."""

        return list(SourceName).index(self)

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    SourceName.BASE_DOCUMENT: "CV",
    SourceName.LINKEDIN: "LinkedIn",
    SourceName.GITHUB: "GitHub",
    SourceName.WEBSITE: "Personal website",
    SourceName.WEB_SEARCH: "Web search",
}

EXTERNAL_SOURCES: Tuple[SourceName, ...] = (
    SourceName.LINKEDIN,
    SourceName.GITHUB,
    SourceName.WEBSITE,
    SourceName.WEB_SEARCH,
)


class Category(str, Enum):
    """Semantic grouping of profile sections; definition order is display order."""

    SUMMARY = "summary"
    EXPERIENCE = "experience"
    SKILLS = "skills"
    PROJECTS = "projects"
    EDUCATION = "education"
    CERTIFICATIONS = "certifications"
    PUBLICATIONS = "publications"
    MENTIONS = "mentions"

    @property
    def order(self) -> int:
        return list(Category).index(self)


_KEY_CLEAN_RE = re.compile(r"[^a-z0-9+#.]+")


def normalize_key(*parts: object) -> str:
    """Build a stable identity key from free-text parts."""

    cleaned = []
    for part in parts:
        if part is None:
            continue
        value = _KEY_CLEAN_RE.sub(" ", str(part).lower()).strip()
        if value:
            cleaned.append(" ".join(value.split()))
    return "|".join(cleaned)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SourceRecord:
    """One adapter's raw fetch result; discarded after merge."""

    source: SourceName
    subject_id: str
    fetched_at: datetime
    payload: Mapping[str, Any]
    ttl_seconds: int
    schema_version: str = "1"


@dataclass(frozen=True, slots=True)
class Fact:
    """A single validated, typed claim decoded from a source payload."""

    category: Category
    key: str
    text: str
    source: SourceName
    fetched_at: datetime
    observed_at: Optional[datetime] = None
    attributes: Mapping[str, str] = field(default_factory=dict)
    reference: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SourceAttribution:
    source: SourceName
    fetched_at: datetime
    observed_at: Optional[datetime] = None
    reference: Optional[str] = None

    def label(self) -> str:
        """Human readable provenance such as ``"GitHub, updated 2025-03"``."""

        stamp = self.observed_at or self.fetched_at
        return f"{self.source.display_name}, updated {stamp:%Y-%m}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "fetched_at": self.fetched_at.isoformat(),
            "observed_at": self.observed_at.isoformat() if self.observed_at else None,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceAttribution":
        observed = data.get("observed_at")
        return cls(
            source=SourceName(data["source"]),
            fetched_at=datetime.fromisoformat(str(data["fetched_at"])),
            observed_at=datetime.fromisoformat(str(observed)) if observed else None,
            reference=data.get("reference"),
        )


def attributions_to_json(attributions: Tuple[SourceAttribution, ...]) -> str:
    return json.dumps([item.to_dict() for item in attributions], ensure_ascii=False)


def attributions_from_json(payload: str | None) -> Tuple[SourceAttribution, ...]:
    if not payload:
        return ()
    return tuple(SourceAttribution.from_dict(item) for item in json.loads(payload))


@dataclass(frozen=True, slots=True)
class Conflict:
    """Mutually exclusive values reported for the same attribute."""

    attribute: str
    values: Tuple[Tuple[str, SourceName], ...]


@dataclass(frozen=True, slots=True)
class Section:
    category: Category
    key: str
    text: str
    attributions: Tuple[SourceAttribution, ...]
    confidence: float
    conflicts: Tuple[Conflict, ...] = ()
    attributes: Mapping[str, str] = field(default_factory=dict)

    @property
    def sources(self) -> Tuple[SourceName, ...]:
        seen: List[SourceName] = []
        for attribution in self.attributions:
            if attribution.source not in seen:
                seen.append(attribution.source)
        return tuple(seen)

    @property
    def observed_at(self) -> Optional[datetime]:
        stamps = [item.observed_at for item in self.attributions if item.observed_at]
        return max(stamps) if stamps else None


@dataclass(frozen=True, slots=True)
class Position:
    title: str
    organization: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    description: str = ""


@dataclass(frozen=True, slots=True)
class EducationEntry:
    institution: str
    degree: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ProjectEntry:
    name: str
    description: str = ""
    url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class BaseDocument:
    """The user's structured CV; owned by its source and never mutated here."""

    subject_id: str
    full_name: str
    headline: str = ""
    summary: str = ""
    positions: Tuple[Position, ...] = ()
    skills: Tuple[str, ...] = ()
    education: Tuple[EducationEntry, ...] = ()
    projects: Tuple[ProjectEntry, ...] = ()
    certifications: Tuple[str, ...] = ()
    updated_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class EnrichedProfile:
    """Immutable, versioned snapshot of the merged profile."""

    subject_id: str
    version: int
    base_document: BaseDocument
    sections: Tuple[Section, ...]
    quality_score: float
    last_merged: datetime

    def sections_for(self, category: Category) -> Tuple[Section, ...]:
        return tuple(section for section in self.sections if section.category is category)

    def category_confidence(self, category: Category) -> float:
        sections = self.sections_for(category)
        if not sections:
            return 0.0
        return sum(section.confidence for section in sections) / len(sections)

    @property
    def categories(self) -> Tuple[Category, ...]:
        return tuple(sorted({section.category for section in self.sections}, key=lambda item: item.order))


@dataclass(frozen=True, slots=True)
class Chunk:
    """Atomic retrievable unit belonging to exactly one profile version."""

    id: str
    subject_id: str
    profile_version: int
    category: Category
    section_key: str
    chunk_index: int
    text: str
    content_hash: str
    attributions: Tuple[SourceAttribution, ...]
    confidence: float
    observed_at: Optional[datetime] = None

    @property
    def token_count(self) -> int:
        return len(self.text.split())

    def metadata(self) -> Dict[str, Any]:
        """Flat metadata suitable for any vector backend."""

        return {
            "subject_id": self.subject_id,
            "profile_version": self.profile_version,
            "category": self.category.value,
            "section_key": self.section_key,
            "chunk_index": self.chunk_index,
            "content_hash": self.content_hash,
            "confidence": float(self.confidence),
            "observed_at": self.observed_at.isoformat() if self.observed_at else "",
            "sources": ",".join(item.source.value for item in self.attributions),
            "attributions": attributions_to_json(self.attributions),
        }


@dataclass(frozen=True, slots=True)
class RankedChunk:
    chunk_id: str
    text: str
    category: Category
    profile_version: int
    similarity: float
    score: float
    confidence: float
    attributions: Tuple[SourceAttribution, ...]
    observed_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class ChatTurn:
    role: str
    text: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class Answer:
    session_id: str
    text: str
    profile_version: int
    attributions: Tuple[SourceAttribution, ...] = ()
    chunk_ids: Tuple[str, ...] = ()
    grounded: bool = True
    degraded: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def source_labels(self) -> List[str]:
        labels: List[str] = []
        for attribution in self.attributions:
            label = attribution.label()
            if label not in labels:
                labels.append(label)
        return labels


__all__ = [
    "Answer",
    "BaseDocument",
    "Category",
    "ChatTurn",
    "Chunk",
    "Conflict",
    "EXTERNAL_SOURCES",
    "EducationEntry",
    "EnrichedProfile",
    "Fact",
    "Position",
    "ProjectEntry",
    "RankedChunk",
    "Section",
    "SourceAttribution",
    "SourceName",
    "SourceRecord",
    "attributions_from_json",
    "attributions_to_json",
    "normalize_key",
    "utcnow",
]
