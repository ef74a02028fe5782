"""Owned state for one running API process.

``EvaluationService`` holds the session registry, the shared evaluation queue,
the audio store, the session store and the scoring client. The FastAPI
lifespan builds one and keeps it on ``app.state.evaluation``; tests build a
fresh one per case.

Submission methods are synchronous: they validate, touch the registry, enqueue
and kick the drain loop, then return the response body. Store writes run as
separate background tasks so the drain loop never waits on them.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from .audio import AudioStore, audio_file_name
from .config import get_logger, log_event
from .errors import (
    ClientInputError,
    DuplicateSubmission,
    PersistenceFailure,
    QueueFull,
    SessionNotFound,
)
from .evaluation_queue import EvaluationQueue
from .games import GAMES, GameSpec
from .metrics import EVAL_JOBS_TOTAL, EVAL_SESSIONS_COMPLETED_TOTAL, STORE_MIRROR_TOTAL
from .models import EvaluationJob, GameType, Session, SessionStatus
from .providers.base import ScoringClient
from .registry import SessionRegistry
from .status import project_debug, project_status
from .store import SessionStore

logger = get_logger("oratora.service")


def _require(value: Any, name: str) -> Any:
    if value is None or (isinstance(value, (str, bytes)) and not value):
        raise ClientInputError(f"{name} is required.")
    return value


class EvaluationService:
    def __init__(
        self,
        scoring: ScoringClient,
        *,
        audio_store: Optional[AudioStore] = None,
        session_store: Optional[SessionStore] = None,
        registry: Optional[SessionRegistry] = None,
        max_queue_length: int = 0,
        max_prompts: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.scoring = scoring
        self.audio = audio_store
        self.store = session_store
        self.registry = registry or SessionRegistry(clock=clock)
        self.queue = EvaluationQueue(self._score, self._merge, max_length=max_queue_length)
        self.max_prompts = int(max_prompts)
        self._clock = clock
        self._background: Set[asyncio.Task] = set()
        self._store_creates: Dict[str, asyncio.Task] = {}

    # ---- scoring + merge (called from the drain loop) ----

    async def _score(self, job: EvaluationJob) -> Dict[str, Any]:
        game = GAMES[job.game_type]
        return await self.scoring.score(
            game.build_prompt(job),
            job.audio,
            job.mime_type,
            schema=game.schema,
            request_id=job.request_id,
        )

    def _merge(self, job: EvaluationJob, result: Optional[Dict[str, Any]], error: Optional[BaseException]) -> None:
        """Write a result (or the placeholder) into the live session.

        Re-fetches by id: the session may have been evicted while the scoring
        call was outstanding, in which case the result is dropped.
        """
        game = GAMES[job.game_type]
        failed = error is not None or not isinstance(result, dict)
        evaluation = game.placeholder(job) if failed else result
        try:
            EVAL_JOBS_TOTAL.labels(game_type=job.game_type.value, status="failed" if failed else "ok").inc()
        except Exception:
            pass
        try:
            completed = self.registry.mutate(
                job.session_id, lambda s: self._apply(game, s, job, evaluation, failed)
            )
        except SessionNotFound:
            log_event(
                logger,
                "evaluation_session_missing",
                requestId=job.request_id,
                sessionId=job.session_id,
                slotIndex=job.slot_index,
            )
            return
        if completed is not None:
            self._on_terminal(completed, job)

    def _apply(
        self,
        game: GameSpec,
        session: Session,
        job: EvaluationJob,
        evaluation: Dict[str, Any],
        failed: bool,
    ) -> Optional[Session]:
        """One synchronous in-place update. Returns the session if it just went terminal."""
        if job.session_created_at is not None and job.session_created_at != session.created_at:
            # The id was evicted and reused while this job was in flight.
            log_event(
                logger,
                "evaluation_session_replaced",
                requestId=job.request_id,
                sessionId=session.id,
                slotIndex=job.slot_index,
            )
            return None
        if session.slots[job.slot_index] is not None:
            log_event(
                logger,
                "evaluation_slot_already_filled",
                logging.WARNING,
                sessionId=session.id,
                slotIndex=job.slot_index,
            )
            return None
        audio_name = None
        if self.audio is not None:
            audio_name = self.audio.save(audio_file_name(session.id, session.game_type, job.slot_index), job.audio)
        session.slots[job.slot_index] = game.slot_record(job, evaluation, failed)
        game.apply_extras(session, job, audio_name)
        if failed:
            session.error = True
        log_event(
            logger,
            "evaluation_complete",
            requestId=job.request_id,
            sessionId=session.id,
            gameType=session.game_type.value,
            slotIndex=job.slot_index,
            filled=session.filled_count,
            expected=session.expected_count,
            error=failed,
        )
        if not session.is_complete:
            return None
        now = self._clock()
        if session.completed_at is None:
            session.completed_at = now
        session.evaluated_at = now
        session.evaluation = game.finalize(session)
        session.advance(game.terminal_status(session))
        return session

    def _on_terminal(self, session: Session, job: EvaluationJob) -> None:
        try:
            EVAL_SESSIONS_COMPLETED_TOTAL.labels(
                game_type=session.game_type.value, status=session.status.value
            ).inc()
        except Exception:
            pass
        log_event(
            logger,
            "session_completed",
            requestId=job.request_id,
            sessionId=session.id,
            gameType=session.game_type.value,
            status=session.status.value,
            error=session.error,
        )
        if self.store is None or not session.user_id:
            return
        # Snapshot now; the mirror task must not read the live entry later.
        patch = GAMES[session.game_type].completion_record(session)
        self._spawn(self._mirror(self.store, session.id, session.store_id, patch))

    # ---- session store (best effort, off the drain loop) ----

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _ensure_store_record(self, session: Session) -> None:
        """Create the history record unless one exists or is already being created."""
        if self.store is None or not session.user_id:
            return
        if session.store_id is not None or session.id in self._store_creates:
            return
        record = GAMES[session.game_type].initial_record(session)
        self._store_creates[session.id] = self._spawn(self._create_record(self.store, session.id, record))

    async def _create_record(self, store: SessionStore, session_id: str, record: Dict[str, Any]) -> Optional[str]:
        try:
            store_id = await store.create_session(record)
        except Exception as e:
            try:
                STORE_MIRROR_TOTAL.labels(operation="create", outcome="error").inc()
            except Exception:
                pass
            log_event(logger, "session_store_create_error", logging.WARNING, sessionId=session_id, error=str(e))
            return None
        finally:
            self._store_creates.pop(session_id, None)
        try:
            STORE_MIRROR_TOTAL.labels(operation="create", outcome="ok").inc()
        except Exception:
            pass
        session = self.registry.find(session_id)
        if session is not None:
            session.store_id = store_id
        return store_id

    async def _mirror(
        self, store: SessionStore, session_id: str, store_id: Optional[str], patch: Dict[str, Any]
    ) -> None:
        pending = self._store_creates.get(session_id)
        if store_id is None and pending is not None:
            store_id = await pending
        if store_id is None:
            session = self.registry.find(session_id)
            store_id = session.store_id if session is not None else None
        if store_id is None:
            log_event(logger, "session_store_mirror_skipped", sessionId=session_id, reason="no_store_record")
            return
        try:
            await store.update_session(store_id, patch)
        except Exception as e:
            try:
                STORE_MIRROR_TOTAL.labels(operation="update", outcome="error").inc()
            except Exception:
                pass
            log_event(
                logger,
                "session_store_mirror_error",
                logging.WARNING,
                sessionId=session_id,
                storeId=store_id,
                error=str(e),
                errorType=type(e).__name__,
            )
            return
        try:
            STORE_MIRROR_TOTAL.labels(operation="update", outcome="ok").inc()
        except Exception:
            pass
        log_event(logger, "session_store_mirror", sessionId=session_id, storeId=store_id)

    # ---- submissions ----

    def _enqueue(self, session: Session, job: EvaluationJob, created: bool = False) -> int:
        if job.slot_index in session.submitted:
            raise DuplicateSubmission("Audio for this prompt was already submitted.")
        try:
            position = self.queue.enqueue(job)
        except QueueFull:
            # Drop a session whose first submission was rejected.
            if created:
                self.registry.delete(session.id)
            raise
        session.submitted.add(job.slot_index)
        self.queue.drain()
        return position

    def _check_game(self, session: Session, game_type: GameType) -> None:
        if session.game_type is not game_type:
            raise ClientInputError(f"Session belongs to the {session.game_type.value} game.")

    def submit_rapid_fire(
        self,
        session_id: str,
        audio: bytes,
        *,
        prompt_index: int,
        total_prompts: int,
        prompt: str = "",
        difficulty: Optional[str] = None,
        seconds: Optional[float] = None,
        response_time: Optional[float] = None,
        total_time: Optional[float] = None,
        mime_type: str = "audio/wav",
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require(session_id, "Session ID")
        _require(audio, "Audio file")
        if total_prompts is None or total_prompts < 1:
            raise ClientInputError("totalPrompts must be a positive integer.")
        if self.max_prompts and total_prompts > self.max_prompts:
            raise ClientInputError(f"totalPrompts may not exceed {self.max_prompts}.")
        if prompt_index is None or not 1 <= prompt_index <= total_prompts:
            raise ClientInputError(f"promptIndex must be between 1 and {total_prompts}.")

        def init() -> Session:
            return Session(
                id=session_id,
                game_type=GameType.RAPID_FIRE,
                payload={"difficulty": difficulty, "totalPrompts": total_prompts},
                slots=[None] * total_prompts,
                created_at=self._clock(),
                user_id=user_id,
            )

        session, created = self.registry.create_or_get(session_id, init)
        self._check_game(session, GameType.RAPID_FIRE)
        if prompt_index is None or not 1 <= prompt_index <= session.expected_count:
            raise ClientInputError(f"promptIndex must be between 1 and {session.expected_count}.")
        job = EvaluationJob(
            session_id=session_id,
            game_type=GameType.RAPID_FIRE,
            audio=audio,
            mime_type=mime_type,
            slot_index=prompt_index - 1,
            context={
                "prompt": prompt,
                "promptIndex": prompt_index,
                "totalPrompts": session.expected_count,
                "difficulty": difficulty,
                "seconds": seconds,
                "responseTime": response_time,
                "totalTime": total_time,
                "submittedAt": self._clock(),
            },
            request_id=request_id,
            session_created_at=session.created_at,
        )
        position = self._enqueue(session, job, created)
        self._ensure_store_record(session)
        return {
            "message": "Audio received and queued for evaluation.",
            "sessionId": session_id,
            "queuePosition": position,
            "sessionStatus": session.status.value,
            "completed": session.filled_count,
            "totalPrompts": session.expected_count,
        }

    def start_conductor(
        self,
        session_id: str,
        *,
        topic: str,
        duration: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require(session_id, "Session ID")
        _require(topic, "Topic")

        def init() -> Session:
            return Session(
                id=session_id,
                game_type=GameType.CONDUCTOR,
                payload={"topic": topic, "duration": duration},
                slots=[None],
                created_at=self._clock(),
                user_id=user_id,
                extras={"energyChanges": [], "breathMoments": []},
            )

        session, created = self.registry.create_or_get(session_id, init)
        self._check_game(session, GameType.CONDUCTOR)
        self._ensure_store_record(session)
        return {
            "message": "Conductor session started.",
            "sessionId": session_id,
            "topic": session.payload.get("topic"),
            "duration": session.payload.get("duration"),
            "status": session.status.value,
            "created": created,
        }

    def _conductor_event(self, session_id: str, key: str, event: Dict[str, Any]) -> int:
        def add(session: Session) -> int:
            self._check_game(session, GameType.CONDUCTOR)
            if session.status is not SessionStatus.IN_PROGRESS:
                raise DuplicateSubmission("Session has already ended.")
            events = session.extras.setdefault(key, [])
            events.append(event)
            return len(events)

        return self.registry.mutate(_require(session_id, "Session ID"), add)

    def record_energy_change(self, session_id: str, energy_level: Any, timestamp: Optional[float] = None) -> Dict[str, Any]:
        _require(energy_level, "Energy level")
        count = self._conductor_event(
            session_id,
            "energyChanges",
            {"energyLevel": energy_level, "timestamp": timestamp, "recordedAt": self._clock()},
        )
        return {"message": "Energy change recorded.", "sessionId": session_id, "energyChanges": count}

    def record_breath_moment(self, session_id: str, timestamp: Optional[float] = None) -> Dict[str, Any]:
        count = self._conductor_event(
            session_id,
            "breathMoments",
            {"timestamp": timestamp, "recordedAt": self._clock()},
        )
        return {"message": "Breath moment recorded.", "sessionId": session_id, "breathMoments": count}

    def end_conductor(
        self,
        session_id: str,
        audio: bytes,
        *,
        mime_type: str = "audio/webm",
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require(session_id, "Session ID")
        _require(audio, "Audio file")
        session = self.registry.get(session_id)
        self._check_game(session, GameType.CONDUCTOR)
        if session.status is not SessionStatus.IN_PROGRESS or 0 in session.submitted:
            raise DuplicateSubmission("Session has already ended.")
        now = self._clock()
        energy = list(session.extras.get("energyChanges") or [])
        breaths = list(session.extras.get("breathMoments") or [])
        actual_ms = int((now - session.created_at) * 1000)
        job = EvaluationJob(
            session_id=session_id,
            game_type=GameType.CONDUCTOR,
            audio=audio,
            mime_type=mime_type,
            context={
                "topic": session.payload.get("topic"),
                "duration": session.payload.get("duration"),
                "energyChanges": energy,
                "breathMoments": breaths,
                "actualDurationMs": actual_ms,
                "submittedAt": now,
            },
            request_id=request_id,
            session_created_at=session.created_at,
        )
        position = self._enqueue(session, job)
        session.extras["endedAt"] = now
        session.extras["actualDurationMs"] = actual_ms
        session.completed_at = now
        session.advance(SessionStatus.COMPLETED)
        return {
            "message": "Conductor session ended and queued for evaluation.",
            "sessionId": session_id,
            "queuePosition": position,
            "sessionStatus": session.status.value,
            "energyChanges": len(energy),
            "breathMoments": len(breaths),
            "duration": actual_ms,
        }

    def submit_triple_step(
        self,
        session_id: str,
        audio: bytes,
        *,
        topic: str,
        word_list: Optional[List[str]] = None,
        integrated_words: Optional[List[str]] = None,
        missed_words: Optional[List[str]] = None,
        transcription: str = "",
        total_time: Optional[float] = None,
        actual_time: Optional[float] = None,
        completed_early: bool = False,
        mime_type: str = "audio/webm",
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require(session_id, "Session ID")
        _require(audio, "Audio file")
        _require(topic, "Topic")
        payload = {
            "topic": topic,
            "wordList": list(word_list or []),
            "integratedWords": list(integrated_words or []),
            "missedWords": list(missed_words or []),
            "transcription": transcription or "",
            "totalTime": total_time,
            "actualTime": actual_time,
            "completedEarly": bool(completed_early),
        }

        def init() -> Session:
            return Session(
                id=session_id,
                game_type=GameType.TRIPLE_STEP,
                payload=payload,
                slots=[None],
                created_at=self._clock(),
                user_id=user_id,
            )

        session, created = self.registry.create_or_get(session_id, init)
        self._check_game(session, GameType.TRIPLE_STEP)
        job = EvaluationJob(
            session_id=session_id,
            game_type=GameType.TRIPLE_STEP,
            audio=audio,
            mime_type=mime_type,
            context={**session.payload, "submittedAt": self._clock()},
            request_id=request_id,
            session_created_at=session.created_at,
        )
        position = self._enqueue(session, job, created)
        self._ensure_store_record(session)
        return {
            "message": "Audio received and queued for evaluation.",
            "sessionId": session_id,
            "queuePosition": position,
            "sessionStatus": session.status.value,
            "wordsGiven": len(payload["wordList"]),
        }

    # ---- reads ----

    def status(self, session_id: str, game_type: Optional[GameType] = None) -> Dict[str, Any]:
        session = self.registry.get(session_id)
        if game_type is not None and session.game_type is not game_type:
            raise SessionNotFound(session_id)
        return project_status(session, len(self.queue), self.queue.is_processing)

    def debug_state(self) -> Dict[str, Any]:
        in_flight = self.queue.in_flight
        return project_debug(
            self.registry,
            self.queue.snapshot(),
            len(self.queue),
            self.queue.is_processing,
            in_flight.describe() if in_flight is not None else None,
        )

    def audio_name(self, session_id: str, prompt_index: Optional[int] = None) -> str:
        """Stored audio name for a session's recording. Raises SessionNotFound."""
        session = self.registry.get(session_id)
        if session.game_type is GameType.RAPID_FIRE:
            files = session.extras.get("audioFiles") or []
            idx = (prompt_index or 0) - 1
            name = files[idx] if 0 <= idx < len(files) else None
        else:
            name = session.extras.get("audioFile")
        if not name:
            raise SessionNotFound(session_id)
        return name

    async def user_history(self, user_id: str, game_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.store is None:
            return []
        try:
            return await self.store.list_user_sessions(user_id, game_type)
        except PersistenceFailure as e:
            log_event(logger, "session_store_list_error", logging.WARNING, userId=user_id, error=str(e))
            raise

    async def wait_idle(self) -> None:
        """Wait for the drain loop and any pending store writes to finish."""
        await self.queue.wait_idle()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._background)
        task = self.queue.drain_task
        if task is not None:
            tasks.append(task)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
