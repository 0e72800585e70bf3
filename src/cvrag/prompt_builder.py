"""Utilities for constructing bounded, attributed prompts for profile chat."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from cvrag.models import ChatTurn, RankedChunk

SYSTEM_TEXT = (
    "You answer questions about {name}'s professional background for a visitor. "
    "Use only the sources listed below and mention which source supports each claim. "
    "If the sources do not cover the question, reply that you have limited information on that."
)
NO_CONTEXT_TEXT = "No sources are available."
MAX_TURN_CHARS = 500
MAX_MESSAGE_CHARS = 2000


@dataclass(slots=True)
class Prompt:
    system_context: str
    history: List[ChatTurn]
    user_message: str

    @property
    def size(self) -> int:
        return len(self.system_context) + len(self.user_message) + sum(len(turn.text) for turn in self.history)


def _truncate(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."


def format_context(chunk: RankedChunk) -> str:
    labels: List[str] = []
    for attribution in chunk.attributions:
        label = attribution.label()
        if label not in labels:
            labels.append(label)
    citation = "; ".join(labels) or "unattributed"
    return f"[source: {citation}] {chunk.text.strip()}"


def build_prompt(
    chunks: Sequence[RankedChunk],
    history: Sequence[ChatTurn],
    message: str,
    *,
    subject_name: str = "the candidate",
    max_chars: int = 6000,
    history_turns: int = 6,
) -> Prompt:
    """Compose the prompt; context fills ``max_chars`` in score order, history is most recent first."""

    if message is None:
        raise ValueError("message must not be None")

    user_message = _truncate(message, MAX_MESSAGE_CHARS)
    header = SYSTEM_TEXT.format(name=subject_name or "the candidate")

    recent = list(history)[-history_turns:] if history_turns > 0 else []
    trimmed_history = [
        ChatTurn(role=turn.role, text=_truncate(turn.text, MAX_TURN_CHARS), timestamp=turn.timestamp)
        for turn in recent
    ]
    budget = max_chars - len(header) - len(user_message) - sum(len(turn.text) for turn in trimmed_history)

    sections: List[str] = []
    for chunk in sorted(chunks, key=lambda item: item.score, reverse=True):
        block = format_context(chunk)
        if len(block) + 2 > budget:
            if not sections and budget > 40:
                sections.append(_truncate(block, budget - 2))
            break
        sections.append(block)
        budget -= len(block) + 2

    contexts_block = "\n\n".join(sections) if sections else NO_CONTEXT_TEXT
    return Prompt(
        system_context=f"{header}\n\n{contexts_block}",
        history=trimmed_history,
        user_message=user_message,
    )


__all__ = ["Prompt", "build_prompt", "format_context"]
