from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class GameType(str, Enum):
    RAPID_FIRE = "rapid-fire"
    CONDUCTOR = "conductor"
    TRIPLE_STEP = "triple-step"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    EVALUATED = "evaluated"
    EVALUATION_FAILED = "evaluation_failed"


# Status only ever moves forward through this ranking.
_STATUS_RANK = {
    SessionStatus.IN_PROGRESS: 0,
    SessionStatus.COMPLETED: 1,
    SessionStatus.EVALUATED: 2,
    SessionStatus.EVALUATION_FAILED: 2,
}


@dataclass
class Session:
    """Ephemeral per-attempt state held in the registry.

    ``slots`` is pre-sized at creation: one slot per prompt for rapid-fire,
    exactly one slot for conductor and triple-step. A slot holds the merged
    evaluation record once its job has been processed.
    """

    id: str
    game_type: GameType
    payload: Dict[str, Any]
    slots: List[Optional[Dict[str, Any]]]
    status: SessionStatus = SessionStatus.IN_PROGRESS
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    evaluated_at: Optional[float] = None
    evaluation: Optional[Dict[str, Any]] = None
    error: bool = False
    user_id: Optional[str] = None
    store_id: Optional[str] = None
    # Game-specific mutable data (conductor events, response timings, audio names)
    extras: Dict[str, Any] = field(default_factory=dict)
    # Slot indices that already have a job queued or processed
    submitted: Set[int] = field(default_factory=set)

    @property
    def expected_count(self) -> int:
        return len(self.slots)

    @property
    def filled_count(self) -> int:
        return sum(1 for s in self.slots if s is not None)

    @property
    def is_complete(self) -> bool:
        return self.filled_count == self.expected_count

    def advance(self, status: SessionStatus) -> bool:
        """Move to ``status`` if it is ahead of the current one."""
        if _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            return False
        self.status = status
        return True


@dataclass(frozen=True)
class EvaluationJob:
    session_id: str
    game_type: GameType
    audio: bytes
    mime_type: str = "audio/wav"
    slot_index: int = 0
    context: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    # created_at of the session this job was submitted against
    session_created_at: Optional[float] = None
    enqueued_at: float = field(default_factory=time.perf_counter)

    def describe(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "gameType": self.game_type.value,
            "slotIndex": self.slot_index,
            "audioBytes": len(self.audio),
        }


def to_ms(ts: Optional[float]) -> Optional[int]:
    if ts is None:
        return None
    return int(ts * 1000)
