from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional

from .audio import AudioStore
from .config import get_logger, log_event
from .metrics import AUDIO_FILES_EVICTED_TOTAL, SESSIONS_EVICTED_TOTAL
from .models import Session
from .registry import SessionRegistry

logger = get_logger("oratora.retention")


def _audio_names(session: Session) -> List[str]:
    names = list(session.extras.get("audioFiles") or [])
    names.append(session.extras.get("audioFile"))
    return [n for n in names if n]


class RetentionSweeper:
    """Hard-evicts registry entries and audio blobs past the retention window.

    Eviction is by ``created_at`` and ignores status. A job still in flight for
    an evicted session finds nothing to merge into and is dropped by the queue.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        audio: Optional[AudioStore],
        *,
        retention_seconds: float = 24 * 3600,
        interval_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.audio = audio
        self.retention_seconds = float(retention_seconds)
        self.interval_seconds = float(interval_seconds)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[float] = None) -> int:
        """Run one eviction pass and return the number of sessions removed."""
        now = self._clock() if now is None else now
        cutoff = now - self.retention_seconds
        evicted = 0
        files = 0
        for sid in self.registry.expired(cutoff):
            session = self.registry.delete(sid)
            if session is None:
                continue
            evicted += 1
            if self.audio is not None:
                for name in _audio_names(session):
                    if self.audio.delete(name):
                        files += 1
        if self.audio is not None:
            # Blobs whose session is already gone (e.g. written before a restart)
            files += len(self.audio.delete_older_than(cutoff))
        try:
            SESSIONS_EVICTED_TOTAL.inc(evicted)
            AUDIO_FILES_EVICTED_TOTAL.inc(files)
        except Exception:
            pass
        log_event(
            logger,
            "retention_sweep",
            evictedSessions=evicted,
            evictedAudioFiles=files,
            remainingSessions=len(self.registry),
        )
        return evicted

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("retention_sweep_error")

    def start(self) -> None:
        """Start the periodic sweep (safe to call multiple times)."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
