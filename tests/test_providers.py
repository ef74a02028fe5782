import json
import types

import httpx
import pytest

import oratora.providers.google as google_mod
import oratora.providers.openrouter as openrouter_mod
from oratora.errors import ScoringFailure
from oratora.games import GAMES
from oratora.models import GameType
from oratora.providers.base import check_required, parse_json_object
from oratora.providers.factory import get_scoring_client
from oratora.providers.google import GoogleScoringClient
from oratora.providers.mock import MockScoringClient
from oratora.providers.openrouter import OpenRouterScoringClient

RAPID_SCHEMA = GAMES[GameType.RAPID_FIRE].schema
GOOD = {
    "responseRate": {"score": 7, "feedback": "quick"},
    "pace": {"score": 6, "feedback": "steady"},
    "energy": {"score": 8, "feedback": "lively"},
}


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json


def _fake_httpx(captured, response=None, exc=None):
    class FakeAsyncClient:
        def __init__(self, *args, **kwargs):
            captured["timeout"] = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, headers=None, json=None, params=None):
            captured["url"] = url
            captured["headers"] = headers or {}
            captured["json"] = json
            captured["params"] = params
            if exc is not None:
                raise exc
            return response

    return types.SimpleNamespace(
        AsyncClient=FakeAsyncClient,
        TimeoutException=httpx.TimeoutException,
        HTTPError=httpx.HTTPError,
    )


@pytest.mark.parametrize("prov_env", ["mock", "test", "unknown"])
def test_factory_basic(prov_env, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AI_PROVIDER_SCORING", prov_env)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    assert isinstance(get_scoring_client(), MockScoringClient)


def test_factory_missing_keys_fall_back_to_mock(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    assert isinstance(get_scoring_client("google"), MockScoringClient)
    assert isinstance(get_scoring_client("openrouter"), MockScoringClient)


def test_factory_env_precedence(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "k")
    monkeypatch.setenv("AI_PROVIDER", "google")
    monkeypatch.setenv("AI_PROVIDER_SCORING", "mock")
    assert isinstance(get_scoring_client(), MockScoringClient)
    monkeypatch.delenv("AI_PROVIDER_SCORING")
    cli = get_scoring_client(model="gemini-test")
    assert isinstance(cli, GoogleScoringClient)
    assert cli.model == "gemini-test"


@pytest.mark.asyncio
async def test_mock_is_deterministic_and_matches_schema():
    cli = MockScoringClient()
    a = await cli.score("p", b"audio", "audio/wav", schema=RAPID_SCHEMA)
    b = await cli.score("p", b"audio", "audio/wav", schema=RAPID_SCHEMA)
    assert a == b
    check_required(a, RAPID_SCHEMA)
    assert 4 <= a["pace"]["score"] <= 9


def test_parse_json_object_tolerates_fences_and_prose():
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object('Here you go: {"a": 2} thanks') == {"a": 2}
    with pytest.raises(ScoringFailure) as ei:
        parse_json_object("no json here")
    assert ei.value.reason == "parse_error"
    with pytest.raises(ScoringFailure):
        parse_json_object("[1, 2]")


def test_check_required_rejects_missing_keys():
    with pytest.raises(ScoringFailure) as ei:
        check_required({"pace": {"score": 1}}, RAPID_SCHEMA)
    assert ei.value.reason == "schema_mismatch"


@pytest.mark.asyncio
async def test_google_score_sends_inline_audio_and_parses(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "dummy")
    captured = {}
    body = {"candidates": [{"content": {"parts": [{"text": "```json\n" + json.dumps(GOOD) + "\n```"}]}}]}
    monkeypatch.setattr(google_mod, "httpx", _fake_httpx(captured, FakeResponse(200, body)))

    cli = GoogleScoringClient(model="gemini-x")
    out = await cli.score("evaluate", b"\x00\x01", "audio/wav", schema=RAPID_SCHEMA, request_id="req-1")
    assert out == GOOD
    assert captured["url"].endswith("/models/gemini-x:generateContent")
    assert captured["params"] == {"key": "dummy"}
    assert captured["headers"]["X-Request-Id"] == "req-1"
    parts = captured["json"]["contents"][0]["parts"]
    assert parts[0]["text"] == "evaluate"
    assert parts[1]["inlineData"] == {"mimeType": "audio/wav", "data": "AAE="}
    assert captured["json"]["generationConfig"]["responseSchema"] == RAPID_SCHEMA


@pytest.mark.asyncio
@pytest.mark.parametrize("response, exc, reason", [
    (FakeResponse(500, {}, "boom"), None, "http_error"),
    (FakeResponse(200, {"candidates": []}), None, "no_candidates"),
    (FakeResponse(200, {"candidates": [{"content": {"parts": []}}]}), None, "no_parts"),
    (FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": "not json"}]}}]}), None, "parse_error"),
    (None, httpx.ReadTimeout("slow"), "timeout"),
    (None, httpx.ConnectError("dns"), "network_error"),
])
async def test_google_failures_raise_scoring_failure(response, exc, reason, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "dummy")
    monkeypatch.setattr(google_mod, "httpx", _fake_httpx({}, response, exc))
    cli = GoogleScoringClient()
    with pytest.raises(ScoringFailure) as ei:
        await cli.score("p", b"a", "audio/wav", schema=RAPID_SCHEMA)
    assert ei.value.reason == reason


@pytest.mark.asyncio
async def test_openrouter_score_uses_input_audio(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "dummy")
    captured = {}
    body = {"choices": [{"message": {"content": json.dumps(GOOD)}}]}
    monkeypatch.setattr(openrouter_mod, "httpx", _fake_httpx(captured, FakeResponse(200, body)))

    cli = OpenRouterScoringClient(model="m")
    out = await cli.score("evaluate", b"abc", "audio/webm;codecs=opus", schema=RAPID_SCHEMA, request_id="r")
    assert out == GOOD
    content = captured["json"]["messages"][0]["content"]
    assert content[1]["input_audio"]["format"] == "webm"
    assert "JSON schema" in content[0]["text"]
    assert captured["headers"]["Authorization"] == "Bearer dummy"
    assert captured["headers"]["X-Request-Id"] == "r"


@pytest.mark.asyncio
async def test_openrouter_http_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "dummy")
    monkeypatch.setattr(openrouter_mod, "httpx", _fake_httpx({}, FakeResponse(429, {}, "rate limited")))
    with pytest.raises(ScoringFailure) as ei:
        await OpenRouterScoringClient().score("p", b"a", "audio/wav", schema=RAPID_SCHEMA)
    assert ei.value.reason == "http_error"
