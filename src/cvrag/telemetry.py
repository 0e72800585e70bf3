"""Centralised observability helpers for structured lifecycle logging."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from cvrag.logging_config import AUDIT_LOGGER_NAME

LOGGER = logging.getLogger("cvrag.telemetry")
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    subject_id: str | None = None,
    session_id: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    details: dict[str, Any] | None = None,
    **payload: Any,
) -> None:
    """Emit a structured log event with the agreed-upon schema."""

    logger = logger or LOGGER
    event: dict[str, Any] = {"step": step, "module": logger.name}
    if subject_id:
        event["subject_id"] = subject_id
    if session_id:
        event["session_id"] = session_id
    if duration_ms is not None:
        event["duration_ms"] = round(duration_ms, 3)
    if details is not None:
        event["details"] = details
    event.update(payload)

    exc_info = None
    if exc is not None:
        if isinstance(exc, BaseException):
            event["exc"] = str(exc)
            event["exc_type"] = exc.__class__.__name__
            if exc.__traceback__ is not None:
                exc_info = (exc.__class__, exc, exc.__traceback__)
        else:
            event["exc"] = str(exc)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(event, exc_info=exc_info)


def emit_source_event(
    step: str,
    *,
    source: str,
    subject_id: str,
    duration_ms: float | None = None,
    cache_hit: bool | None = None,
    attempts: int | None = None,
    error: BaseException | str | None = None,
) -> None:
    log_event(
        LOGGER,
        step,
        level="warning" if error is not None else "info",
        subject_id=subject_id,
        duration_ms=duration_ms,
        exc=error,
        source=source,
        cache_hit=cache_hit,
        attempts=attempts,
    )


def emit_validation_event(*, source: str, subject_id: str, violations: Iterable[Any], rejected: bool) -> None:
    items = [
        {"field": violation.field, "kind": violation.kind.value, "detail": violation.detail}
        for violation in violations
    ]
    if not items and not rejected:
        return
    log_event(
        LOGGER,
        "validation.violations",
        level="warning",
        subject_id=subject_id,
        source=source,
        rejected=rejected,
        violations=items,
    )


def emit_enrichment_event(
    *,
    subject_id: str,
    version: int,
    status: str,
    quality_score: float,
    sources_queried: int,
    sources_successful: int,
    cache_hits: int,
    duration_ms: float,
    errors: Iterable[str] = (),
) -> None:
    payload = {
        "version": version,
        "status": status,
        "quality_score": quality_score,
        "sources_queried": sources_queried,
        "sources_successful": sources_successful,
        "cache_hits": cache_hits,
        "errors": list(errors),
    }
    log_event(LOGGER, "enrichment.complete", subject_id=subject_id, duration_ms=duration_ms, **payload)
    AUDIT_LOGGER.info({"event": "enrich", "subject_id": subject_id, **payload})


def emit_index_event(
    step: str,
    *,
    subject_id: str,
    profile_version: int,
    index_version: int | None = None,
    model_version: str | None = None,
    indexed: int | None = None,
    reused: int | None = None,
    failed: int | None = None,
    duration_ms: float | None = None,
    error: BaseException | str | None = None,
) -> None:
    payload = {
        "profile_version": profile_version,
        "index_version": index_version,
        "model_version": model_version,
        "indexed": indexed,
        "reused": reused,
        "failed": failed,
    }
    log_event(
        LOGGER,
        step,
        level="warning" if error is not None else "info",
        subject_id=subject_id,
        duration_ms=duration_ms,
        exc=error,
        **payload,
    )
    if step == "index.publish":
        AUDIT_LOGGER.info({"event": "index", "subject_id": subject_id, **payload})


def emit_embedding_event(
    *,
    model: str,
    count: int,
    duration_ms: float,
    error: BaseException | str | None = None,
) -> None:
    log_event(
        LOGGER,
        "embeddings.batch",
        level="warning" if error is not None else "debug",
        duration_ms=duration_ms,
        exc=error,
        model=model,
        count=count,
    )


def emit_retrieval_event(
    *,
    subject_id: str,
    profile_version: int,
    query: str,
    k: int,
    results: list[dict[str, Any]],
    duration_ms: float,
) -> None:
    log_event(
        LOGGER,
        "retrieval.search",
        subject_id=subject_id,
        duration_ms=duration_ms,
        profile_version=profile_version,
        query_preview=query[:120],
        k=k,
        results=results,
    )


def emit_chat_event(
    step: str,
    *,
    session_id: str,
    subject_id: str | None = None,
    duration_ms: float | None = None,
    level: str = "info",
    error: BaseException | str | None = None,
    **payload: Any,
) -> None:
    log_event(
        LOGGER,
        step,
        level=level,
        session_id=session_id,
        subject_id=subject_id,
        duration_ms=duration_ms,
        exc=error,
        **payload,
    )
    if step == "chat.answer":
        AUDIT_LOGGER.info({"event": "chat", "session_id": session_id, "subject_id": subject_id, **payload})


def emit_exception(module: str, error: BaseException, **context: Any) -> None:
    log_event(
        logging.getLogger(module),
        "exception",
        level="error",
        exc=error,
        details={"type": error.__class__.__name__, **context},
    )


__all__ = [
    "emit_chat_event",
    "emit_embedding_event",
    "emit_enrichment_event",
    "emit_exception",
    "emit_index_event",
    "emit_retrieval_event",
    "emit_source_event",
    "emit_validation_event",
    "log_event",
]
