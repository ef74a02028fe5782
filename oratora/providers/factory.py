import os
from typing import Optional

from .base import ScoringClient
from .mock import MockScoringClient


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def get_scoring_client(provider: Optional[str] = None, model: Optional[str] = None) -> ScoringClient:
    """Return a scoring client based on env or explicit overrides.

    Env precedence:
      - AI_PROVIDER_SCORING
      - AI_PROVIDER
      - defaults to 'mock'
    Model from AI_SCORING_MODEL if not given.
    """
    prov = (provider or _env_str("AI_PROVIDER_SCORING") or _env_str("AI_PROVIDER") or "mock").lower()
    mdl = model or _env_str("AI_SCORING_MODEL") or None

    if prov in ("mock", "test"):
        return MockScoringClient(model=mdl)

    if prov in ("google", "gemini"):
        try:
            from .google import GoogleScoringClient
            return GoogleScoringClient(model=mdl)
        except RuntimeError:
            # Missing API key
            return MockScoringClient(model=mdl)

    if prov in ("openrouter", "router"):
        try:
            from .openrouter import OpenRouterScoringClient
            return OpenRouterScoringClient(model=mdl)
        except RuntimeError:
            return MockScoringClient(model=mdl)

    # Unknown -> mock
    return MockScoringClient(model=mdl)
