"""Generation collaborators used by the chat session manager."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from cvrag.errors import GenerationError
from cvrag.models import ChatTurn


class Generator(ABC):
    """Black-box chat model; one attempt per message, bounded by the caller's timeout."""

    @abstractmethod
    async def generate(self, system_context: str, history: Sequence[ChatTurn], user_message: str) -> str:
        """Return the assistant reply for ``user_message``."""

    @property
    def name(self) -> str:
        return self.__class__.__name__


class MockGenerator(Generator):
    """Return a deterministic response for any prompt."""

    async def generate(self, system_context: str, history: Sequence[ChatTurn], user_message: str) -> str:
        del history  # Unused in the mock implementation.
        sources = [line for line in system_context.splitlines() if line.startswith("[source:")]
        grounding = sources[0] if sources else "no context"
        return f"MOCK_ANSWER: {user_message[:100]} | {grounding[:160]}"


class UnavailableGenerator(Generator):
    """Placeholder used when no generation backend is configured."""

    def __init__(self, reason: str = "No generation backend configured") -> None:
        self._reason = reason

    async def generate(self, system_context: str, history: Sequence[ChatTurn], user_message: str) -> str:
        raise GenerationError(self._reason)


def get_generator(backend: str) -> Generator:
    if backend == "mock":
        return MockGenerator()
    if backend in {"none", "disabled"}:
        return UnavailableGenerator()
    raise ValueError(f"Unsupported generation backend: {backend!r}")


__all__ = ["Generator", "MockGenerator", "UnavailableGenerator", "get_generator"]
