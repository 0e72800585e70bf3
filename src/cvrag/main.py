import logging
import os
from typing import Any, Callable, TypeVar

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from cvrag.api import router as profile_router
from cvrag.logging_config import configure_logging
from cvrag.service import get_service
from cvrag.vectorstore import VectorStoreUnavailableError

configure_logging(os.getenv("CVRAG_LOG_LEVEL", "INFO"), os.getenv("CVRAG_LOG_DIR", "logs"))

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="CV Profile Assistant API")
app.include_router(profile_router)


T = TypeVar("T")


def _resolve_dependency(factory: Callable[[], T]) -> T:
    """Resolve a dependency while respecting FastAPI overrides."""

    override: Any | None = app.dependency_overrides.get(factory)
    resolved: Any = override if override is not None else factory
    return resolved() if callable(resolved) else resolved


@app.on_event("shutdown")
async def _close_clients() -> None:
    if get_service.cache_info().currsize:
        await get_service().aclose()


@app.get("/healthz", response_class=PlainTextResponse)
def healthcheck() -> str:
    """Liveness probe used by container orchestrators."""
    return "ok"


@app.get("/readyz", response_class=PlainTextResponse)
async def readiness_probe() -> str:
    """Readiness probe that ensures the embedder and vector index answer."""

    errors: list[str] = []
    try:
        service = _resolve_dependency(get_service)
    except VectorStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=f"vector_store_unavailable: {exc}") from exc

    try:
        await service.embedder.embed("__readyz__")
    except Exception as exc:  # pragma: no cover - reported to the probe
        errors.append(f"embedding_model_unavailable: {exc}")

    try:
        service.vector_index.count("__readyz__")
    except VectorStoreUnavailableError as exc:
        errors.append(f"vector_store_unavailable: {exc}")

    if errors:
        raise HTTPException(status_code=503, detail="; ".join(errors))
    return "ok"
