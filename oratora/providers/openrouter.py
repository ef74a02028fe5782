import base64
import json
import os
from typing import Any, Dict, Optional

import httpx

from ..errors import ScoringFailure
from .base import ScoringClient, check_required, parse_json_object

# OpenRouter's input_audio part takes a format name, not a MIME type.
_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
    "audio/mp4": "m4a",
}


class OpenRouterScoringClient(ScoringClient):
    provider_name: str = "openrouter"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_SCORING_MODEL") or "google/gemini-2.5-flash")
        api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is required for OpenRouter provider")
        self._api_key = api_key
        # Default 60s; can override via AI_HTTP_TIMEOUT_SECONDS or OPENROUTER_TIMEOUT_SECONDS
        try:
            self._timeout = float(os.getenv("OPENROUTER_TIMEOUT_SECONDS") or os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 60)
        except Exception:
            self._timeout = 60.0
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "Oratora API").strip() or "Oratora API"

    async def score(
        self,
        prompt: str,
        audio: bytes,
        mime_type: str,
        schema: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = "https://openrouter.ai/api/v1/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "User-Agent": "oratora-api/0.1.0",
            "HTTP-Referer": self._referer,
            "X-Title": self._title,
        }
        if request_id:
            headers["X-Request-Id"] = request_id

        instruction = prompt
        if schema:
            instruction += "\n\nReturn STRICT JSON matching this JSON schema:\n" + json.dumps(schema)
        fmt = _AUDIO_FORMATS.get((mime_type or "").split(";")[0].strip().lower(), "wav")
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {
                            "type": "input_audio",
                            "input_audio": {
                                "data": base64.b64encode(audio or b"").decode("ascii"),
                                "format": fmt,
                            },
                        },
                    ],
                }
            ],
            "temperature": 0,
            # Prefer structured JSON when supported
            "response_format": {"type": "json_object"},
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise ScoringFailure("timeout", str(e)) from e
        except httpx.HTTPError as e:
            raise ScoringFailure("network_error", str(e)) from e
        if resp.status_code >= 400:
            raise ScoringFailure("http_error", f"OpenRouter score error {resp.status_code}: {(resp.text or '')[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ScoringFailure("parse_error", "response body is not JSON") from e

        choices = (data or {}).get("choices") or []
        if not choices:
            raise ScoringFailure("no_choices")
        content = ((choices[0] or {}).get("message") or {}).get("content")
        if isinstance(content, list):
            content = "".join(str((c or {}).get("text") or "") for c in content if isinstance(c, dict))
        if not content:
            raise ScoringFailure("empty_content")
        return check_required(parse_json_object(str(content)), schema)
