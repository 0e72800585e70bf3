from __future__ import annotations

import pytest

from cvrag.errors import GenerationError
from cvrag.llm import MockGenerator, UnavailableGenerator, get_generator


@pytest.mark.anyio
async def test_mock_generator_echoes_message_and_first_source() -> None:
    reply = await MockGenerator().generate("header\n\n[source: CV, updated 2025-01] Python", [], "Python?")
    assert reply == "MOCK_ANSWER: Python? | [source: CV, updated 2025-01] Python"


@pytest.mark.anyio
async def test_unavailable_generator_raises() -> None:
    with pytest.raises(GenerationError):
        await UnavailableGenerator().generate("", [], "hello")


def test_get_generator_backends() -> None:
    assert isinstance(get_generator("mock"), MockGenerator)
    assert isinstance(get_generator("disabled"), UnavailableGenerator)
    with pytest.raises(ValueError):
        get_generator("gpt")
