"""Single-consumer evaluation queue.

Jobs are appended by request handlers and popped strictly FIFO by one drain
loop. The awaited scoring call is the only suspension point inside the loop,
so at most one call into the scoring model is outstanding at any instant.
Everything else (pop, merge, state transitions) runs as synchronous steps on
the event loop.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .config import get_logger, log_event
from .errors import QueueFull
from .metrics import (
    EVAL_ENQUEUE_LAT_SECONDS,
    EVAL_JOB_SECONDS,
    EVAL_QUEUE_DEPTH,
)
from .models import EvaluationJob

logger = get_logger("oratora.queue")

ScoreFn = Callable[[EvaluationJob], Awaitable[Dict[str, Any]]]
MergeFn = Callable[[EvaluationJob, Optional[Dict[str, Any]], Optional[BaseException]], None]


class DrainState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"


class EvaluationQueue:
    """FIFO job list plus an idempotent drain loop.

    ``score`` performs the remote call for one job. ``merge`` receives the job
    together with either the result or the exception and must be synchronous;
    it is responsible for writing into the registry (and for tolerating a
    session that has disappeared meanwhile).
    """

    def __init__(self, score: ScoreFn, merge: MergeFn, *, max_length: int = 0):
        self._score = score
        self._merge = merge
        self._max_length = max(0, int(max_length))
        self._jobs: Deque[EvaluationJob] = deque()
        self._state = DrainState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Optional[EvaluationJob] = None
        self.processed = 0

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def state(self) -> DrainState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._state is DrainState.DRAINING

    @property
    def in_flight(self) -> Optional[EvaluationJob]:
        return self._in_flight

    @property
    def drain_task(self) -> Optional[asyncio.Task]:
        return self._task

    def enqueue(self, job: EvaluationJob) -> int:
        """Append ``job`` and return its 1-based queue position. Never blocks."""
        if self._max_length and len(self._jobs) >= self._max_length:
            raise QueueFull("Evaluation queue is full, try again later.")
        self._jobs.append(job)
        position = len(self._jobs)
        try:
            EVAL_QUEUE_DEPTH.set(position)
        except Exception:
            pass
        log_event(
            logger,
            "evaluation_enqueue",
            requestId=job.request_id,
            sessionId=job.session_id,
            gameType=job.game_type.value,
            slotIndex=job.slot_index,
            queuePosition=position,
            drainState=self._state.value,
        )
        return position

    def drain(self) -> Optional[asyncio.Task]:
        """Make sure exactly one drain loop is running.

        Returns the active drain task, or ``None`` when there is nothing to do.
        The idle check and the transition to DRAINING happen before any await.
        """
        if self._state is DrainState.DRAINING:
            return self._task
        if not self._jobs:
            return None
        self._state = DrainState.DRAINING
        task = asyncio.get_running_loop().create_task(self._run())
        self._task = task
        task.add_done_callback(self._on_done)
        return task

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and no drain loop is active."""
        while self._task is not None:
            await self._task

    def snapshot(self) -> List[Dict[str, Any]]:
        return [job.describe() for job in self._jobs]

    async def _run(self) -> None:
        log_event(logger, "evaluation_drain_start", queueDepth=len(self._jobs))
        try:
            while self._jobs:
                job = self._jobs.popleft()
                await self._process(job)
        finally:
            # Runs synchronously after the last merge, so no enqueue can slip
            # in between the empty check and going idle.
            self._state = DrainState.IDLE
            self._task = None
            self._in_flight = None
        log_event(logger, "evaluation_drain_idle", processed=self.processed)

    def _on_done(self, task: asyncio.Task) -> None:
        # Covers a drain task cancelled before its first step ran.
        if self._task is task:
            self._state = DrainState.IDLE
            self._task = None

    async def _process(self, job: EvaluationJob) -> None:
        wait_s = time.perf_counter() - job.enqueued_at
        try:
            EVAL_ENQUEUE_LAT_SECONDS.observe(max(0.0, wait_s))
            EVAL_QUEUE_DEPTH.set(len(self._jobs))
        except Exception:
            pass
        log_event(
            logger,
            "evaluation_dequeue",
            requestId=job.request_id,
            sessionId=job.session_id,
            gameType=job.game_type.value,
            slotIndex=job.slot_index,
            queueDepth=len(self._jobs),
            enqueueLatencyMs=int(wait_s * 1000),
        )
        result: Optional[Dict[str, Any]] = None
        error: Optional[BaseException] = None
        self._in_flight = job
        t0 = time.perf_counter()
        try:
            result = await self._score(job)
        except Exception as e:
            error = e
        finally:
            self._in_flight = None
        try:
            EVAL_JOB_SECONDS.labels(game_type=job.game_type.value).observe(time.perf_counter() - t0)
        except Exception:
            pass
        try:
            self._merge(job, result, error)
        except Exception:
            # A broken merge must not stop the jobs behind this one.
            logger.exception("evaluation_merge_error: session=%s slot=%s", job.session_id, job.slot_index)
        self.processed += 1
        if error is not None:
            log_event(
                logger,
                "evaluation_failed",
                logging.WARNING,
                requestId=job.request_id,
                sessionId=job.session_id,
                slotIndex=job.slot_index,
                error=str(error),
                errorType=type(error).__name__,
            )
