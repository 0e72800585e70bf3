"""Chat sessions pinned to one profile version."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

from cachetools import LRUCache

from cvrag.errors import (
    GenerationError,
    IndexVersionMismatch,
    SessionExpired,
    SessionNotFound,
    TooManyRequests,
)
from cvrag.llm import Generator
from cvrag.models import Answer, Category, ChatTurn, RankedChunk, SourceAttribution, utcnow
from cvrag.profiles import ProfileRepository
from cvrag.prompt_builder import build_prompt
from cvrag.retrieval import RetrievalEngine
from cvrag.telemetry import emit_chat_event
from cvrag.vectorstore import IndexRegistry

LOGGER = logging.getLogger(__name__)

LIMITED_INFORMATION_TEXT = "I have limited information on that."
UNAVAILABLE_TEXT = "The assistant is temporarily unavailable. Please try again in a moment."

_SUGGESTIONS = {
    Category.SUMMARY: "Can you give me a short overview of {name}'s background?",
    Category.EXPERIENCE: "What roles has {name} held recently?",
    Category.SKILLS: "Which technologies does {name} work with?",
    Category.PROJECTS: "What projects has {name} built?",
    Category.EDUCATION: "Where did {name} study?",
    Category.CERTIFICATIONS: "Which certifications does {name} hold?",
    Category.PUBLICATIONS: "Has {name} published or spoken anywhere?",
    Category.MENTIONS: "Where has {name} been mentioned online?",
}
MAX_SUGGESTIONS = 4
RECENT_SESSIONS = 10
EXPIRED_SESSION_MEMORY = 1024
MIN_RATING, MAX_RATING = 1, 5


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass(slots=True)
class ChatSession:
    session_id: str
    subject_id: str
    visitor: str
    profile_version: int
    created_at: float
    last_activity: float
    idle_timeout: float
    history: Deque[ChatTurn]
    subject_name: str = ""
    suggested_questions: Tuple[str, ...] = ()
    status: SessionStatus = SessionStatus.CREATED
    message_count: int = 0
    rate_window: Deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def expires_at(self) -> float:
        return self.last_activity + self.idle_timeout


@dataclass(frozen=True, slots=True)
class SessionSummary:
    session_id: str
    created_at: float
    ended_at: float
    message_count: int
    status: SessionStatus
    rating: Optional[int] = None
    feedback: str = ""

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.ended_at - self.created_at)


@dataclass(slots=True)
class _SubjectStats:
    total_sessions: int = 0
    completed_sessions: int = 0
    rating_total: int = 0
    total_messages: int = 0
    total_queries: int = 0
    response_ms_total: float = 0.0
    recent: Deque[SessionSummary] = field(default_factory=lambda: deque(maxlen=RECENT_SESSIONS))


@dataclass(frozen=True, slots=True)
class ChatAnalytics:
    """Per-subject chat usage: session counts, ratings and answer latency."""

    subject_id: str
    total_sessions: int
    completed_sessions: int
    average_rating: Optional[float]
    total_messages: int
    average_messages_per_session: float
    total_queries: int
    average_response_ms: Optional[float]
    recent_sessions: Tuple[SessionSummary, ...]


def suggested_questions(categories: Tuple[Category, ...], subject_name: str) -> Tuple[str, ...]:
    name = subject_name.split()[0] if subject_name.strip() else "the candidate"
    ordered = sorted(categories, key=lambda category: category.order)
    return tuple(_SUGGESTIONS[category].format(name=name) for category in ordered[:MAX_SUGGESTIONS])


def _merge_attributions(chunks: List[RankedChunk]) -> Tuple[SourceAttribution, ...]:
    merged: List[SourceAttribution] = []
    seen = set()
    for chunk in chunks:
        for attribution in chunk.attributions:
            key = (attribution.source, attribution.label(), attribution.reference)
            if key not in seen:
                seen.add(key)
                merged.append(attribution)
    return tuple(merged)


class SessionManager:
    """Own every chat session; one in-flight message per session at a time."""

    def __init__(
        self,
        retrieval: RetrievalEngine,
        generator: Generator,
        profiles: ProfileRepository,
        registry: IndexRegistry,
        *,
        idle_timeout: float = 1800.0,
        rate_limit: int = 10,
        rate_window: float = 60.0,
        history_max_turns: int = 20,
        prompt_history_turns: int = 6,
        prompt_max_chars: int = 6000,
        retrieval_k: int = 4,
        generation_timeout: float = 20.0,
        message_timeout: float = 30.0,
        expired_memory: int = EXPIRED_SESSION_MEMORY,
        clock: Callable[[], float] = time.time,
        wall_clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._retrieval = retrieval
        self._generator = generator
        self._profiles = profiles
        self._registry = registry
        self._idle_timeout = idle_timeout
        self._rate_limit = rate_limit
        self._rate_window = rate_window
        self._history_max_turns = history_max_turns
        self._prompt_history_turns = prompt_history_turns
        self._prompt_max_chars = prompt_max_chars
        self._retrieval_k = retrieval_k
        self._generation_timeout = generation_timeout
        self._message_timeout = message_timeout
        self._clock = clock
        self._wall_clock = wall_clock
        self._sessions: Dict[str, ChatSession] = {}
        # Ids of recently expired sessions, so callers can tell expiry from an unknown id.
        self._expired: LRUCache = LRUCache(maxsize=max(1, expired_memory))
        self._stats: Dict[str, _SubjectStats] = {}

    @property
    def open_sessions(self) -> int:
        return len(self._sessions)

    def _stats_for(self, subject_id: str) -> _SubjectStats:
        return self._stats.setdefault(subject_id, _SubjectStats())

    def open_session(self, subject_id: str, visitor: str | None = None) -> ChatSession:
        state = self._registry.current(subject_id)
        if state is None:
            raise IndexVersionMismatch(f"No index has been published for {subject_id!r}")
        profile = self._profiles.get(subject_id, state.profile_version)
        subject_name = profile.base_document.full_name if profile else ""
        categories = profile.categories if profile else ()

        now = self._clock()
        session = ChatSession(
            session_id=uuid.uuid4().hex,
            subject_id=subject_id,
            visitor=visitor or f"anonymous-{uuid.uuid4().hex[:12]}",
            profile_version=state.profile_version,
            created_at=now,
            last_activity=now,
            idle_timeout=self._idle_timeout,
            history=deque(maxlen=self._history_max_turns),
            subject_name=subject_name,
            suggested_questions=suggested_questions(categories, subject_name),
        )
        self._sessions[session.session_id] = session
        self._stats_for(subject_id).total_sessions += 1
        emit_chat_event(
            "chat.session_opened",
            session_id=session.session_id,
            subject_id=subject_id,
            profile_version=state.profile_version,
        )
        return session

    def get_session(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is not None and self._clock() >= session.expires_at:
            self._expire(session)
            session = None
        if session is None:
            if session_id in self._expired:
                raise SessionExpired(f"Session {session_id!r} expired after inactivity")
            raise SessionNotFound(f"Unknown session {session_id!r}")
        return session

    def close_session(self, session_id: str, rating: int | None = None, feedback: str | None = None) -> SessionSummary:
        """End a session, optionally recording the visitor's 1-5 rating and feedback."""

        if rating is not None and not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
        session = self.get_session(session_id)
        del self._sessions[session_id]
        session.status = SessionStatus.CLOSED
        session.history.clear()
        summary = self._record_end(session, rating=rating, feedback=(feedback or "").strip())
        emit_chat_event(
            "chat.session_closed",
            session_id=session_id,
            subject_id=session.subject_id,
            rating=rating,
            message_count=session.message_count,
        )
        return summary

    def expire_idle(self) -> int:
        """Destroy every session idle past its timeout; returns how many were expired."""

        now = self._clock()
        expired = 0
        for session in list(self._sessions.values()):
            if now >= session.expires_at:
                self._expire(session)
                expired += 1
        return expired

    def _expire(self, session: ChatSession) -> None:
        self._sessions.pop(session.session_id, None)
        self._expired[session.session_id] = session.subject_id
        session.status = SessionStatus.EXPIRED
        session.history.clear()
        session.rate_window.clear()
        self._record_end(session)
        emit_chat_event("chat.session_expired", session_id=session.session_id, subject_id=session.subject_id)

    def _record_end(self, session: ChatSession, *, rating: int | None = None, feedback: str = "") -> SessionSummary:
        summary = SessionSummary(
            session_id=session.session_id,
            created_at=session.created_at,
            ended_at=self._clock(),
            message_count=session.message_count,
            status=session.status,
            rating=rating,
            feedback=feedback,
        )
        stats = self._stats_for(session.subject_id)
        if rating is not None:
            stats.completed_sessions += 1
            stats.rating_total += rating
        stats.recent.appendleft(summary)
        return summary

    def analytics(self, subject_id: str) -> ChatAnalytics:
        stats = self._stats.get(subject_id) or _SubjectStats()
        return ChatAnalytics(
            subject_id=subject_id,
            total_sessions=stats.total_sessions,
            completed_sessions=stats.completed_sessions,
            average_rating=(
                round(stats.rating_total / stats.completed_sessions, 2) if stats.completed_sessions else None
            ),
            total_messages=stats.total_messages,
            average_messages_per_session=(
                round(stats.total_messages / stats.total_sessions, 1) if stats.total_sessions else 0.0
            ),
            total_queries=stats.total_queries,
            average_response_ms=(
                round(stats.response_ms_total / stats.total_queries, 1) if stats.total_queries else None
            ),
            recent_sessions=tuple(stats.recent),
        )

    def submit_message(self, session_id: str, text: str) -> "asyncio.Task[Answer]":
        """Schedule :meth:`handle_message` and return the task for the caller to await or poll."""

        return asyncio.create_task(self.handle_message(session_id, text))

    async def handle_message(self, session_id: str, text: str) -> Answer:
        session = self.get_session(session_id)
        async with session.lock:
            session = self.get_session(session_id)
            now = self._clock()
            self._check_rate(session, now)
            session.last_activity = now
            session.status = SessionStatus.ACTIVE

            started = time.perf_counter()
            history = list(session.history)
            user_turn = ChatTurn(role="user", text=text, timestamp=self._wall_clock())
            answer: Optional[Answer] = None
            try:
                answer = await asyncio.wait_for(self._answer(session, text, history), timeout=self._message_timeout)
            except asyncio.TimeoutError:
                emit_chat_event(
                    "chat.degraded",
                    session_id=session_id,
                    subject_id=session.subject_id,
                    level="warning",
                    error="message deadline exceeded",
                )
                answer = self._degraded(session)
            finally:
                session.message_count += 1
                self._stats_for(session.subject_id).total_messages += 1
                session.history.append(user_turn)
                if answer is not None:
                    session.history.append(ChatTurn(role="assistant", text=answer.text, timestamp=answer.created_at))

            duration_ms = (time.perf_counter() - started) * 1000
            if not answer.degraded:
                stats = self._stats_for(session.subject_id)
                stats.total_queries += 1
                stats.response_ms_total += duration_ms
            emit_chat_event(
                "chat.answer",
                session_id=session_id,
                subject_id=session.subject_id,
                duration_ms=duration_ms,
                profile_version=answer.profile_version,
                grounded=answer.grounded,
                degraded=answer.degraded,
                chunk_ids=list(answer.chunk_ids),
            )
            return answer

    def _check_rate(self, session: ChatSession, now: float) -> None:
        window = session.rate_window
        while window and now - window[0] >= self._rate_window:
            window.popleft()
        if len(window) >= self._rate_limit:
            retry_after = max(0.0, self._rate_window - (now - window[0]))
            emit_chat_event(
                "chat.rate_limited",
                session_id=session.session_id,
                subject_id=session.subject_id,
                level="warning",
                retry_after=round(retry_after, 3),
            )
            raise TooManyRequests(session.session_id, retry_after)
        window.append(now)

    def _degraded(self, session: ChatSession) -> Answer:
        return Answer(
            session_id=session.session_id,
            text=UNAVAILABLE_TEXT,
            profile_version=session.profile_version,
            grounded=False,
            degraded=True,
            created_at=self._wall_clock(),
        )

    async def _answer(self, session: ChatSession, text: str, history: List[ChatTurn]) -> Answer:
        chunks = await self._retrieval.search(session.subject_id, text, session.profile_version, self._retrieval_k)
        if not chunks:
            return Answer(
                session_id=session.session_id,
                text=LIMITED_INFORMATION_TEXT,
                profile_version=session.profile_version,
                grounded=False,
                created_at=self._wall_clock(),
            )

        prompt = build_prompt(
            chunks,
            history,
            text,
            subject_name=session.subject_name,
            max_chars=self._prompt_max_chars,
            history_turns=self._prompt_history_turns,
        )
        try:
            reply = await asyncio.wait_for(
                self._generator.generate(prompt.system_context, prompt.history, prompt.user_message),
                timeout=self._generation_timeout,
            )
        except asyncio.TimeoutError:
            emit_chat_event(
                "chat.degraded",
                session_id=session.session_id,
                subject_id=session.subject_id,
                level="warning",
                error="generation timed out",
            )
            return self._degraded(session)
        except Exception as error:  # black-box collaborator
            if not isinstance(error, GenerationError):
                LOGGER.exception("Generator %s raised unexpectedly", self._generator.name)
            emit_chat_event(
                "chat.degraded",
                session_id=session.session_id,
                subject_id=session.subject_id,
                level="warning",
                error=error,
            )
            return self._degraded(session)

        return Answer(
            session_id=session.session_id,
            text=reply.strip() or LIMITED_INFORMATION_TEXT,
            profile_version=session.profile_version,
            attributions=_merge_attributions(chunks),
            chunk_ids=tuple(chunk.chunk_id for chunk in chunks),
            created_at=self._wall_clock(),
        )


__all__ = [
    "ChatAnalytics",
    "ChatSession",
    "LIMITED_INFORMATION_TEXT",
    "SessionManager",
    "SessionStatus",
    "SessionSummary",
    "UNAVAILABLE_TEXT",
    "suggested_questions",
]
