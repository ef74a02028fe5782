"""Read-side views over registry entries.

Pure functions: nothing here mutates a session or touches the queue.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .models import GameType, Session, to_ms


def project_status(session: Session, queue_length: int, is_processing: bool) -> Dict[str, Any]:
    """Client-facing status for one session.

    Fields that are not yet known render as ``None`` or an empty list.
    """
    view: Dict[str, Any] = {
        "sessionId": session.id,
        "gameType": session.game_type.value,
        "status": session.status.value,
        "completed": session.filled_count,
        "expected": session.expected_count,
        "evaluation": session.evaluation,
        "error": bool(session.error),
        "createdAt": to_ms(session.created_at),
        "completedAt": to_ms(session.completed_at),
        "evaluatedAt": to_ms(session.evaluated_at),
        "queueLength": int(queue_length),
        "isProcessing": bool(is_processing),
    }
    extras = session.extras or {}
    payload = session.payload or {}
    if session.game_type is GameType.RAPID_FIRE:
        view.update(
            {
                "totalPrompts": session.expected_count,
                "difficulty": payload.get("difficulty"),
                "evaluations": list(session.slots),
                "responseTimes": list(extras.get("responseTimes") or [None] * session.expected_count),
                "audioFiles": list(extras.get("audioFiles") or [None] * session.expected_count),
            }
        )
    elif session.game_type is GameType.CONDUCTOR:
        view.update(
            {
                "topic": payload.get("topic"),
                "duration": payload.get("duration"),
                "energyChanges": list(extras.get("energyChanges") or []),
                "breathMoments": list(extras.get("breathMoments") or []),
                "startedAt": to_ms(session.created_at),
                "endedAt": to_ms(extras.get("endedAt")),
                "actualDuration": extras.get("actualDurationMs"),
                "audioFile": extras.get("audioFile"),
            }
        )
    else:
        view.update(
            {
                "topic": payload.get("topic"),
                "wordList": list(payload.get("wordList") or []),
                "integratedWords": list(payload.get("integratedWords") or []),
                "missedWords": list(payload.get("missedWords") or []),
                "transcription": payload.get("transcription"),
                "totalTime": payload.get("totalTime"),
                "actualTime": payload.get("actualTime"),
                "completedEarly": bool(payload.get("completedEarly")),
                "audioFile": extras.get("audioFile"),
            }
        )
    return view


def project_debug(sessions: Iterable[Session], queued: List[Dict[str, Any]], queue_length: int, is_processing: bool, in_flight: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Dump of every registry entry plus queue contents. Diagnostic only."""
    rows = [
        {
            "sessionId": s.id,
            "gameType": s.game_type.value,
            "status": s.status.value,
            "completed": s.filled_count,
            "expected": s.expected_count,
            "error": bool(s.error),
            "createdAt": to_ms(s.created_at),
            "completedAt": to_ms(s.completed_at),
        }
        for s in sessions
    ]
    return {
        "totalSessions": len(rows),
        "sessions": rows,
        "queueLength": int(queue_length),
        "isProcessing": bool(is_processing),
        "inFlight": in_flight,
        "queueItems": queued,
    }
