from __future__ import annotations

from conftest import FIXED_NOW

from cvrag.models import Category, ChatTurn, RankedChunk, SourceAttribution, SourceName
from cvrag.prompt_builder import MAX_TURN_CHARS, NO_CONTEXT_TEXT, build_prompt, format_context


def _chunk(chunk_id: str, text: str, score: float, *sources: SourceName) -> RankedChunk:
    return RankedChunk(
        chunk_id=chunk_id,
        text=text,
        category=Category.SKILLS,
        profile_version=1,
        similarity=score,
        score=score,
        confidence=0.9,
        attributions=tuple(SourceAttribution(source, FIXED_NOW) for source in sources),
    )


def test_contexts_are_sorted_by_score_and_cited() -> None:
    chunks = [
        _chunk("low", "Knows SQL.", 0.3, SourceName.BASE_DOCUMENT),
        _chunk("high", "Runs Kafka clusters.", 0.9, SourceName.LINKEDIN, SourceName.GITHUB),
    ]

    prompt = build_prompt(chunks, [], "What does Ada run?", subject_name="Ada Lovelace")

    assert prompt.system_context.startswith("You answer questions about Ada Lovelace's professional background for a visitor.")
    assert prompt.system_context.index("Runs Kafka clusters.") < prompt.system_context.index("Knows SQL.")
    assert "[source: LinkedIn, updated 2025-06; GitHub, updated 2025-06] Runs Kafka clusters." in prompt.system_context
    assert prompt.user_message == "What does Ada run?"


def test_context_respects_character_budget() -> None:
    chunks = [_chunk(f"c{index}", "word " * 60, 1.0 - index / 10, SourceName.GITHUB) for index in range(5)]

    prompt = build_prompt(chunks, [], "question", max_chars=900)

    assert prompt.size <= 900
    assert prompt.system_context.count("[source:") < 5


def test_history_is_recent_and_truncated() -> None:
    history = [ChatTurn(role="user", text=f"turn {index} " + "x" * 800, timestamp=FIXED_NOW) for index in range(10)]

    prompt = build_prompt([], history, "next", history_turns=3)

    assert [turn.text.split()[1] for turn in prompt.history] == ["7", "8", "9"]
    assert all(len(turn.text) <= MAX_TURN_CHARS for turn in prompt.history)
    assert prompt.system_context.endswith(NO_CONTEXT_TEXT)


def test_format_context_without_attribution() -> None:
    assert format_context(_chunk("x", " Python ", 0.5)) == "[source: unattributed] Python"
