from __future__ import annotations

import pytest

from conftest import SUBJECT

from cvrag.models import SourceName
from cvrag.service import get_service, reset_service_cache


@pytest.mark.anyio
async def test_refresh_publishes_profile_and_index(make_service) -> None:
    service = make_service()

    first = await service.refresh(SUBJECT, [SourceName.GITHUB, SourceName.LINKEDIN])
    second = await service.refresh(SUBJECT, [SourceName.GITHUB, SourceName.LINKEDIN], force_refresh=True)

    assert first.enrichment.profile.version == 1
    assert first.index.index_version == 1
    assert second.enrichment.profile.version == 2
    assert second.index.indexed == first.index.indexed
    assert second.index.reused > 0
    assert service.registry.current(SUBJECT).profile_version == 2
    await service.aclose()


def test_service_is_cached_until_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CVRAG_VECTOR_STORE", "memory")
    reset_service_cache()
    try:
        assert get_service() is get_service()
        first = get_service()
        reset_service_cache()
        assert get_service() is not first
    finally:
        reset_service_cache()
