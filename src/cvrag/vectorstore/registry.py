"""Tracks which index build is live for each subject and which are retired."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)


def namespace_for(subject_id: str, profile_version: int, index_version: int) -> str:
    return f"{subject_id}:p{profile_version}:i{index_version}"


@dataclass(frozen=True, slots=True)
class IndexState:
    subject_id: str
    profile_version: int
    index_version: int
    model_version: str
    dimension: int
    namespace: str
    chunk_count: int
    published_at: float


class IndexRegistry:
    """Publish index builds atomically and schedule superseded ones for removal."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._current: Dict[str, IndexState] = {}
        self._last_index_version: Dict[str, int] = {}
        self._retired: Dict[str, Tuple[IndexState, float]] = {}
        self._lock = threading.Lock()

    def current(self, subject_id: str) -> Optional[IndexState]:
        with self._lock:
            return self._current.get(subject_id)

    def reserve_index_version(self, subject_id: str) -> int:
        with self._lock:
            version = self._last_index_version.get(subject_id, 0) + 1
            self._last_index_version[subject_id] = version
            return version

    def publish(self, state: IndexState) -> Optional[IndexState]:
        """Make ``state`` current and retire the previous build; returns the retired one."""

        with self._lock:
            previous = self._current.get(state.subject_id)
            if previous is not None and previous.index_version > state.index_version:
                # A newer build already won the race.
                self._retired[state.namespace] = (state, self._clock())
                return state
            self._current[state.subject_id] = state
            if previous is not None:
                self._retired[previous.namespace] = (previous, self._clock())
        LOGGER.info(
            "Index %s is live for %s (profile v%s)",
            state.namespace,
            state.subject_id,
            state.profile_version,
        )
        return previous

    def retire(self, state: IndexState) -> None:
        with self._lock:
            self._retired[state.namespace] = (state, self._clock())

    def due_for_collection(self, grace_seconds: float) -> List[IndexState]:
        cutoff = self._clock() - grace_seconds
        with self._lock:
            return [state for state, retired_at in self._retired.values() if retired_at <= cutoff]

    def forget(self, namespace: str) -> None:
        with self._lock:
            self._retired.pop(namespace, None)

    def retired(self) -> List[IndexState]:
        with self._lock:
            return [state for state, _ in self._retired.values()]


__all__ = ["IndexRegistry", "IndexState", "namespace_for"]
