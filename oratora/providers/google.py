import base64
import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from ..errors import ScoringFailure
from .base import ScoringClient, check_required, parse_json_object


class GoogleScoringClient(ScoringClient):
    provider_name: str = "google"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_SCORING_MODEL") or "gemini-2.5-pro")
        api_key = (os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY") or "").strip()
        if not api_key:
            raise RuntimeError("GOOGLE_API_KEY is required for Google provider")
        self._api_key = api_key
        # HTTP timeout (seconds)
        try:
            self._timeout = float(os.getenv("GOOGLE_TIMEOUT_SECONDS") or os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 60)
        except Exception:
            self._timeout = 60.0

    async def score(
        self,
        prompt: str,
        audio: bytes,
        mime_type: str,
        schema: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Call Gemini ``generateContent`` with the prompt and inline audio.

        Endpoint: POST https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent
        The response is requested as JSON; when ``schema`` is given it is sent
        as ``responseSchema`` so the model returns the expected shape.
        """
        url = f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "oratora-api/0.1.0",
        }
        if request_id:
            headers["X-Request-Id"] = request_id

        generation_config: Dict[str, Any] = {
            "temperature": 0.2,
            "responseMimeType": "application/json",
        }
        if schema:
            generation_config["responseSchema"] = schema
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {
                            "inlineData": {
                                "mimeType": mime_type or "audio/wav",
                                "data": base64.b64encode(audio or b"").decode("ascii"),
                            }
                        },
                    ],
                }
            ],
            "generationConfig": generation_config,
            "safetySettings": [
                {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, headers=headers, json=payload, params={"key": self._api_key})
        except httpx.TimeoutException as e:
            raise ScoringFailure("timeout", str(e)) from e
        except httpx.HTTPError as e:
            raise ScoringFailure("network_error", str(e)) from e

        if resp.status_code >= 400:
            try:
                logging.getLogger("oratora.providers.google").error(json.dumps({
                    "event": "google_score_http_error",
                    "status": resp.status_code,
                    "body": (resp.text or "")[:1024],
                    "model": self.model,
                    "requestId": request_id,
                }))
            except Exception:
                pass
            raise ScoringFailure("http_error", f"Google score error {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ScoringFailure("parse_error", "response body is not JSON") from e

        # Parse Google API response: { candidates: [ { content: { parts: [ { text } ] } } ] }
        candidates = (data or {}).get("candidates") or []
        if not candidates:
            raise ScoringFailure("no_candidates", str((data or {}).get("promptFeedback") or ""))
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text") or "") for p in parts if isinstance(p, dict))
        if not text.strip():
            raise ScoringFailure("no_parts")
        return check_required(parse_json_object(text), schema)
