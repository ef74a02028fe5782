from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List, Optional

from .config import get_logger, log_event
from .models import GameType

logger = get_logger("oratora.audio")

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


def audio_file_name(session_id: str, game_type: GameType, slot_index: int = 0) -> str:
    """File name for one recording. Rapid-fire prompts are numbered from 1."""
    sid = _SAFE_ID.sub("_", session_id)
    if game_type is GameType.RAPID_FIRE:
        return f"{sid}_prompt_{slot_index + 1}.wav"
    if game_type is GameType.CONDUCTOR:
        return f"{sid}_conductor.webm"
    return f"{sid}_triple_step.webm"


class AudioStore:
    """Transient on-disk store for evaluated recordings.

    Files live until the retention sweeper removes them together with their
    session.
    """

    def __init__(self, root: os.PathLike | str):
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        return self.root / Path(name).name

    def save(self, name: str, data: bytes) -> Optional[str]:
        """Write ``data`` under ``name``. Returns the name, or None on I/O error."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.path_for(name).write_bytes(data or b"")
        except OSError as e:
            log_event(logger, "audio_save_error", name=name, error=str(e))
            return None
        return name

    def open_path(self, name: str) -> Optional[Path]:
        p = self.path_for(name)
        return p if p.is_file() else None

    def delete(self, name: str) -> bool:
        try:
            self.path_for(name).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            log_event(logger, "audio_delete_error", name=name, error=str(e))
            return False

    def delete_older_than(self, cutoff: float) -> List[str]:
        """Remove files whose mtime is before ``cutoff`` (epoch seconds)."""
        removed: List[str] = []
        if not self.root.is_dir():
            return removed
        for p in self.root.iterdir():
            try:
                if p.is_file() and p.stat().st_mtime < cutoff:
                    p.unlink()
                    removed.append(p.name)
            except OSError as e:
                log_event(logger, "audio_delete_error", name=p.name, error=str(e))
        return removed
