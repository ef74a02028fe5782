from __future__ import annotations

import abc
import json
from typing import Any, Dict, Optional

from ..errors import ScoringFailure


class ScoringClient(abc.ABC):
    """Interface for the remote model that scores one audio recording.

    Implementations return the parsed JSON evaluation object, or raise
    ``ScoringFailure`` when the call fails or the output cannot be parsed.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None):
        self.model = model

    @abc.abstractmethod
    async def score(
        self,
        prompt: str,
        audio: bytes,
        mime_type: str,
        schema: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...


def parse_json_object(content_text: str) -> Dict[str, Any]:
    """Parse model text output into a JSON object.

    Tolerates markdown code fences and prose around the object.
    """
    text = (content_text or "").strip()
    # Clean up common markdown artifacts
    if text.startswith("```"):
        lines = text.split("\n")
        if len(lines) > 2 and lines[-1].lstrip().startswith("```"):
            text = "\n".join(lines[1:-1]).strip()
    # If extra prose is around JSON, try to extract the first top-level JSON object
    if not (text.startswith("{") and text.endswith("}")):
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            text = text[start : end + 1]
    try:
        obj = json.loads(text)
    except ValueError as e:
        raise ScoringFailure("parse_error", str(e)) from e
    if not isinstance(obj, dict):
        raise ScoringFailure("parse_error", "expected a JSON object")
    return obj


def check_required(obj: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Reject results that miss a top-level key the schema requires."""
    if not schema:
        return obj
    missing = [k for k in (schema.get("required") or []) if not isinstance(obj.get(k), dict)]
    if missing:
        raise ScoringFailure("schema_mismatch", "missing " + ", ".join(missing))
    return obj
