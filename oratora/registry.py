from __future__ import annotations

import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from .config import get_logger, log_event
from .errors import SessionNotFound
from .models import Session

logger = get_logger("oratora.registry")

T = TypeVar("T")


class SessionRegistry:
    """In-memory map of session id to mutable session state.

    Scoped to the lifetime of the owning service. Every operation is a single
    synchronous step, so on the event loop thread no lock is needed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._sessions: Dict[str, Session] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def create_or_get(self, session_id: str, init_fn: Callable[[], Session]) -> Tuple[Session, bool]:
        """Return the existing entry, or build one with ``init_fn``.

        Repeated calls with the same id never reset progress.
        """
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing, False
        session = init_fn()
        if session.id != session_id:
            raise ValueError(f"init_fn built session {session.id!r} for id {session_id!r}")
        self._sessions[session_id] = session
        log_event(
            logger,
            "session_created",
            sessionId=session_id,
            gameType=session.game_type.value,
            expected=session.expected_count,
        )
        return session, True

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def find(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def mutate(self, session_id: str, fn: Callable[[Session], T]) -> T:
        """Apply ``fn`` to the live entry in one step and return its result."""
        return fn(self.get(session_id))

    def delete(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def expired(self, cutoff: float) -> List[str]:
        """Ids of sessions created strictly before ``cutoff`` (epoch seconds)."""
        return [sid for sid, s in self._sessions.items() if s.created_at < cutoff]

    def now(self) -> float:
        return self._clock()
