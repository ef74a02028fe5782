import asyncio
import hashlib
import os
from typing import Any, Dict, Optional

from .base import ScoringClient


class MockScoringClient(ScoringClient):
    """Deterministic stand-in for the scoring model.

    Builds a result that satisfies the requested schema; numeric fields are
    derived from a hash of the audio so the same recording always scores the
    same.
    """

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or "mock-scoring-1")
        try:
            self._delay_s = max(0.0, float(os.getenv("MOCK_SCORING_DELAY_MS") or 0) / 1000.0)
        except Exception:
            self._delay_s = 0.0

    async def score(
        self,
        prompt: str,
        audio: bytes,
        mime_type: str,
        schema: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        seed = hashlib.sha256((audio or b"") + (prompt or "").encode("utf-8")).digest()
        if not schema:
            return {"overall": {"score": _score_from(seed, 0), "feedback": "placeholder"}}
        return _fill(schema, seed, [0])


def _score_from(seed: bytes, i: int) -> int:
    # Deterministic value in [4, 9]
    return 4 + seed[i % len(seed)] % 6


def _fill(schema: Dict[str, Any], seed: bytes, counter: list) -> Any:
    kind = schema.get("type")
    if kind == "object":
        props = schema.get("properties") or {}
        return {k: _fill(v, seed, counter) for k, v in props.items()}
    if kind == "array":
        return []
    if kind == "number" or kind == "integer":
        counter[0] += 1
        return _score_from(seed, counter[0])
    if kind == "boolean":
        return False
    return "placeholder"
