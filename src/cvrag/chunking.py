"""Split enriched profile sections into sentence-aligned, token-bounded chunks."""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Iterator, List

from cvrag.models import Category, Chunk, EnrichedProfile, Section

# A sentence ends at terminal punctuation followed by whitespace or the end of text.
_SENTENCE_RE = re.compile(r"\S.*?(?:[.!?](?=\s|\Z)|\Z)", re.DOTALL)
LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ChunkingConfig:
    """Token budgets; a token is a whitespace-delimited word."""

    target_tokens: int = 250
    max_tokens: int = 300


def split_sentences(text: str) -> List[str]:
    return [match.group(0).strip() for match in _SENTENCE_RE.finditer(text) if match.group(0).strip()]


def content_hash(category: Category, section_key: str, text: str) -> str:
    payload = f"{category.value}|{section_key}|{text}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


class ProfileChunker:
    """Pack whole sentences into chunks close to the target token window."""

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()
        if self.config.target_tokens <= 0:
            raise ValueError("target_tokens must be a positive integer")
        if self.config.max_tokens < self.config.target_tokens:
            raise ValueError("max_tokens must be greater than or equal to target_tokens")

    def chunk_profile(self, profile: EnrichedProfile) -> List[Chunk]:
        chunks: List[Chunk] = []
        for section in profile.sections:
            chunks.extend(self.chunk_section(profile.subject_id, profile.version, section))
        return chunks

    def chunk_section(self, subject_id: str, profile_version: int, section: Section) -> List[Chunk]:
        chunks: List[Chunk] = []
        for index, text in enumerate(self._pack(section.text)):
            digest = content_hash(section.category, section.key, text)
            chunks.append(
                Chunk(
                    id=f"{subject_id}:v{profile_version}:{digest[:16]}:{index}",
                    subject_id=subject_id,
                    profile_version=profile_version,
                    category=section.category,
                    section_key=section.key,
                    chunk_index=index,
                    text=text,
                    content_hash=digest,
                    attributions=section.attributions,
                    confidence=section.confidence,
                    observed_at=section.observed_at,
                )
            )
        return chunks

    def _pack(self, text: str) -> Iterator[str]:
        buffer: List[str] = []
        buffer_tokens = 0
        for sentence in split_sentences(text):
            tokens = len(sentence.split())
            if tokens > self.config.max_tokens:
                LOGGER.debug("Sentence of %s tokens exceeds max_tokens; emitting it whole", tokens)
            if buffer and buffer_tokens + tokens > self.config.target_tokens:
                yield " ".join(buffer)
                buffer, buffer_tokens = [], 0
            buffer.append(sentence)
            buffer_tokens += tokens
        if buffer:
            yield " ".join(buffer)


__all__ = ["ChunkingConfig", "ProfileChunker", "content_hash", "split_sentences"]
