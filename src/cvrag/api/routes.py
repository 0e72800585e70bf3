"""API router exposing enrichment, profile and chat endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from cvrag.auth import InMemoryAuthorizationProvider, SourceGrant
from cvrag.errors import (
    BaseDocumentNotFound,
    CVRagError,
    IndexVersionMismatch,
    SessionExpired,
    SessionNotFound,
    TooManyRequests,
)
from cvrag.models import (
    Answer,
    BaseDocument,
    EducationEntry,
    EnrichedProfile,
    Position,
    ProjectEntry,
    SourceName,
)
from cvrag.profiles import InMemoryBaseDocumentStore
from cvrag.service import ProfileChatService, get_service
from cvrag.vectorstore import VectorStoreUnavailableError

router = APIRouter(tags=["profiles"])


class PositionPayload(BaseModel):
    title: str
    organization: str
    start_date: str | None = None
    end_date: str | None = None
    description: str = ""


class EducationPayload(BaseModel):
    institution: str
    degree: str = ""
    start_date: str | None = None
    end_date: str | None = None


class ProjectPayload(BaseModel):
    name: str
    description: str = ""
    url: str | None = None


class BaseDocumentPayload(BaseModel):
    """Structured CV as produced by the document parsing collaborator."""

    full_name: str = Field(..., min_length=1)
    headline: str = ""
    summary: str = ""
    positions: list[PositionPayload] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    education: list[EducationPayload] = Field(default_factory=list)
    projects: list[ProjectPayload] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None

    def to_document(self, subject_id: str) -> BaseDocument:
        return BaseDocument(
            subject_id=subject_id,
            full_name=self.full_name,
            headline=self.headline,
            summary=self.summary,
            positions=tuple(Position(**item.model_dump()) for item in self.positions),
            skills=tuple(self.skills),
            education=tuple(EducationEntry(**item.model_dump()) for item in self.education),
            projects=tuple(ProjectEntry(**item.model_dump()) for item in self.projects),
            certifications=tuple(self.certifications),
            updated_at=self.updated_at,
        )


class GrantPayload(BaseModel):
    token: str = ""
    account: str = Field(..., min_length=1, description="Login, member id, site URL or search query.")
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None


class EnrichRequest(BaseModel):
    sources: list[SourceName] | None = Field(None, description="Sources to query; all configured when omitted.")
    force_refresh: bool = False


class SourceErrorPayload(BaseModel):
    source: str
    kind: str
    message: str
    attempts: int


class EnrichResponse(BaseModel):
    subject_id: str
    profile_version: int
    status: str
    quality_score: float
    sources_queried: int
    sources_successful: int
    cache_hits: int
    duration_ms: float
    errors: list[SourceErrorPayload]
    index_version: int
    chunks_indexed: int
    chunks_reused: int
    chunks_failed: int


class SessionRequest(BaseModel):
    visitor: str | None = Field(None, description="Authenticated user id; anonymous when omitted.")


class SessionResponse(BaseModel):
    session_id: str
    subject_id: str
    profile_version: int
    status: str
    suggested_questions: list[str]
    expires_at: float


class MessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)


class EndSessionRequest(BaseModel):
    rating: int | None = Field(None, ge=1, le=5, description="Visitor satisfaction from 1 to 5.")
    feedback: str | None = Field(None, max_length=2000)


class EndSessionResponse(BaseModel):
    session_id: str
    message_count: int
    rating: int | None
    message: str


class SessionSummaryPayload(BaseModel):
    session_id: str
    status: str
    message_count: int
    rating: int | None
    duration_seconds: float


class ChatAnalyticsResponse(BaseModel):
    subject_id: str
    total_sessions: int
    completed_sessions: int
    average_rating: float | None
    total_messages: int
    average_messages_per_session: float
    total_queries: int
    average_response_ms: float | None
    recent_sessions: list[SessionSummaryPayload]


class AnswerResponse(BaseModel):
    session_id: str
    answer: str
    profile_version: int
    grounded: bool
    degraded: bool
    sources: list[str]
    chunk_ids: list[str]
    created_at: datetime


def _http_error(exc: CVRagError) -> HTTPException:
    if isinstance(exc, SessionExpired):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, (SessionNotFound, BaseDocumentNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TooManyRequests):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(max(1, int(round(exc.retry_after))))},
        )
    if isinstance(exc, IndexVersionMismatch):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, VectorStoreUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _serialise_profile(profile: EnrichedProfile) -> dict[str, Any]:
    return {
        "subject_id": profile.subject_id,
        "version": profile.version,
        "quality_score": profile.quality_score,
        "last_merged": profile.last_merged.isoformat(),
        "sections": [
            {
                "category": section.category.value,
                "key": section.key,
                "text": section.text,
                "confidence": section.confidence,
                "sources": [attribution.label() for attribution in section.attributions],
                "conflicts": [
                    {
                        "attribute": conflict.attribute,
                        "values": [{"value": value, "source": source.value} for value, source in conflict.values],
                    }
                    for conflict in section.conflicts
                ],
            }
            for section in profile.sections
        ],
    }


def _serialise_answer(answer: Answer) -> AnswerResponse:
    return AnswerResponse(
        session_id=answer.session_id,
        answer=answer.text,
        profile_version=answer.profile_version,
        grounded=answer.grounded,
        degraded=answer.degraded,
        sources=answer.source_labels,
        chunk_ids=list(answer.chunk_ids),
        created_at=answer.created_at,
    )


@router.put("/subjects/{subject_id}/base-document", status_code=204)
async def put_base_document(
    subject_id: str,
    payload: BaseDocumentPayload,
    service: ProfileChatService = Depends(get_service),
) -> Response:
    """Register the structured CV that enrichment merges into."""

    store = service.base_documents
    if not isinstance(store, InMemoryBaseDocumentStore):
        raise HTTPException(status_code=405, detail="Base documents are read-only in this deployment")
    store.put(payload.to_document(subject_id))
    return Response(status_code=204)


@router.put("/subjects/{subject_id}/grants/{source}", status_code=204)
async def put_grant(
    subject_id: str,
    source: SourceName,
    payload: GrantPayload,
    service: ProfileChatService = Depends(get_service),
) -> Response:
    """Record consent for one source and drop any response cached under the old grant."""

    provider = service.authorization
    if not isinstance(provider, InMemoryAuthorizationProvider):
        raise HTTPException(status_code=405, detail="Grants are managed by the authorization service")
    provider.grant(
        subject_id,
        SourceGrant(
            source=source,
            token=payload.token,
            account=payload.account,
            scopes=frozenset(payload.scopes),
            expires_at=payload.expires_at,
        ),
    )
    service.orchestrator.invalidate(subject_id, [source])
    return Response(status_code=204)


@router.post("/subjects/{subject_id}/enrich", response_model=EnrichResponse)
async def enrich_subject(
    subject_id: str,
    request: EnrichRequest,
    service: ProfileChatService = Depends(get_service),
) -> EnrichResponse:
    """Run enrichment and publish the index for the resulting profile version."""

    try:
        result = await service.refresh(subject_id, request.sources, force_refresh=request.force_refresh)
    except CVRagError as exc:
        raise _http_error(exc) from exc

    enrichment = result.enrichment
    return EnrichResponse(
        subject_id=subject_id,
        profile_version=enrichment.profile.version,
        status=enrichment.status,
        quality_score=enrichment.profile.quality_score,
        sources_queried=enrichment.sources_queried,
        sources_successful=enrichment.sources_successful,
        cache_hits=enrichment.cache_hits,
        duration_ms=round(enrichment.duration_ms, 3),
        errors=[
            SourceErrorPayload(source=error.source.value, kind=error.kind, message=error.message, attempts=error.attempts)
            for error in enrichment.errors
        ],
        index_version=result.index.index_version,
        chunks_indexed=result.index.indexed,
        chunks_reused=result.index.reused,
        chunks_failed=len(result.index.failed),
    )


@router.get("/subjects/{subject_id}/profile")
async def get_profile(
    subject_id: str,
    version: int | None = None,
    service: ProfileChatService = Depends(get_service),
) -> dict[str, Any]:
    profile = service.profiles.get(subject_id, version)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No profile for {subject_id!r}")
    return _serialise_profile(profile)


@router.post("/subjects/{subject_id}/sessions", response_model=SessionResponse, status_code=201)
async def open_session(
    subject_id: str,
    request: SessionRequest,
    service: ProfileChatService = Depends(get_service),
) -> SessionResponse:
    try:
        session = service.sessions.open_session(subject_id, request.visitor)
    except CVRagError as exc:
        raise _http_error(exc) from exc
    return SessionResponse(
        session_id=session.session_id,
        subject_id=session.subject_id,
        profile_version=session.profile_version,
        status=session.status.value,
        suggested_questions=list(session.suggested_questions),
        expires_at=session.expires_at,
    )


@router.post("/sessions/{session_id}/messages", response_model=AnswerResponse)
async def post_message(
    session_id: str,
    request: MessageRequest,
    service: ProfileChatService = Depends(get_service),
) -> AnswerResponse:
    """Answer one visitor message from the session's pinned profile version."""

    if not request.text.strip():
        raise HTTPException(status_code=422, detail="Message must not be empty")
    try:
        answer = await service.sessions.submit_message(session_id, request.text)
    except CVRagError as exc:
        raise _http_error(exc) from exc
    return _serialise_answer(answer)


@router.post("/sessions/{session_id}/end", response_model=EndSessionResponse)
async def end_session(
    session_id: str,
    request: EndSessionRequest,
    service: ProfileChatService = Depends(get_service),
) -> EndSessionResponse:
    """Close a session and record the visitor's rating and feedback."""

    try:
        summary = service.sessions.close_session(session_id, request.rating, request.feedback)
    except CVRagError as exc:
        raise _http_error(exc) from exc
    return EndSessionResponse(
        session_id=session_id,
        message_count=summary.message_count,
        rating=summary.rating,
        message="Thank you for your feedback!",
    )


@router.get("/subjects/{subject_id}/chat-analytics", response_model=ChatAnalyticsResponse)
async def chat_analytics(
    subject_id: str,
    service: ProfileChatService = Depends(get_service),
) -> ChatAnalyticsResponse:
    analytics = service.sessions.analytics(subject_id)
    return ChatAnalyticsResponse(
        subject_id=subject_id,
        total_sessions=analytics.total_sessions,
        completed_sessions=analytics.completed_sessions,
        average_rating=analytics.average_rating,
        total_messages=analytics.total_messages,
        average_messages_per_session=analytics.average_messages_per_session,
        total_queries=analytics.total_queries,
        average_response_ms=analytics.average_response_ms,
        recent_sessions=[
            SessionSummaryPayload(
                session_id=summary.session_id,
                status=summary.status.value,
                message_count=summary.message_count,
                rating=summary.rating,
                duration_seconds=round(summary.duration_seconds, 3),
            )
            for summary in analytics.recent_sessions
        ],
    )


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(
    session_id: str,
    service: ProfileChatService = Depends(get_service),
) -> Response:
    try:
        service.sessions.close_session(session_id)
    except CVRagError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


__all__ = ["router"]
