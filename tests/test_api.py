import time

import pytest
from fastapi.testclient import TestClient

from oratora.audio import AudioStore
from oratora.main import app
from oratora.providers.mock import MockScoringClient
from oratora.service import EvaluationService
from oratora.store import MemorySessionStore

TERMINAL = {"completed", "evaluated", "evaluation_failed"}


@pytest.fixture
def client(tmp_path):
    with TestClient(app) as c:
        # Fresh owned state per test
        app.state.evaluation = EvaluationService(
            MockScoringClient(),
            audio_store=AudioStore(tmp_path),
            session_store=MemorySessionStore(),
        )
        yield c


def _poll(client, path, until=TERMINAL, attempts=200):
    body = {}
    for _ in range(attempts):
        r = client.get(path)
        assert r.status_code == 200
        body = r.json()
        if body["status"] in until:
            return body
        time.sleep(0.01)
    raise AssertionError(f"session never reached {until}: {body}")


def _rf_form(sid, idx, total=2, **extra):
    data = {
        "sessionId": sid,
        "promptIndex": str(idx),
        "totalPrompts": str(total),
        "prompt": f"Life is like a {idx}",
        "difficulty": "medium",
        "seconds": "5",
        "responseTime": "1.2",
        "totalTime": "4.5",
    }
    data.update(extra)
    return data


def test_health_and_request_id(client):
    r = client.get("/health", headers={"X-Request-Id": "abc"})
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers["X-Request-Id"] == "abc"
    assert client.get("/health").headers.get("X-Request-Id")


def test_metrics_exposition(client):
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "oratora_http_requests_total" in r.text


def test_unknown_session_is_404(client):
    for path in (
        "/api/v1/session/unknown-id",
        "/api/v1/games/rapid-fire/session/unknown-id",
        "/api/v1/games/conductor/session/unknown-id",
        "/api/v1/games/triple-step/session/unknown-id",
    ):
        r = client.get(path)
        assert r.status_code == 404
        assert r.json() == {"detail": "Session not found."}


def test_rapid_fire_flow(client):
    files = {"audio": ("p1.wav", b"RIFF-one", "audio/wav")}
    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("RF", 1), files=files)
    assert r.status_code == 200
    body = r.json()
    assert body["sessionId"] == "RF"
    assert body["totalPrompts"] == 2
    assert body["queuePosition"] >= 1
    assert body["sessionStatus"] == "in-progress"

    files = {"audio": ("p2.wav", b"RIFF-two", "audio/wav")}
    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("RF", 2), files=files)
    assert r.status_code == 200

    status = _poll(client, "/api/v1/games/rapid-fire/session/RF")
    assert status["status"] == "completed"
    assert status["completed"] == 2
    assert all(e["evaluation"]["pace"]["score"] >= 4 for e in status["evaluations"])
    assert status["responseTimes"][0] == {"responseTime": 1.2, "totalTime": 4.5}

    audio = client.get("/api/v1/audio/RF/2")
    assert audio.status_code == 200
    assert audio.content == b"RIFF-two"
    assert client.get("/api/v1/audio/RF/3").status_code == 404


def test_rapid_fire_validation_errors(client):
    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("V", 1))
    assert r.status_code == 400
    assert r.json() == {"detail": "Audio file is required."}

    files = {"audio": ("a.wav", b"x", "audio/wav")}
    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("", 1), files=files)
    assert r.status_code == 400

    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("V", "abc"), files=files)
    assert r.status_code == 400

    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("V", 3), files=files)
    assert r.status_code == 400

    assert client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("V", 1), files=files).status_code == 200
    r = client.post("/api/v1/games/rapid-fire/evaluate", data=_rf_form("V", 1), files=files)
    assert r.status_code == 409


def test_conductor_flow(client):
    r = client.post("/api/v1/games/conductor/start", json={"sessionId": "C", "topic": "Volcanoes", "duration": 1})
    assert r.status_code == 200 and r.json()["created"] is True
    r = client.post("/api/v1/games/conductor/start", json={"sessionId": "C", "topic": "Other"})
    assert r.json()["created"] is False

    assert client.post("/api/v1/games/conductor/energy-change", json={"sessionId": "C", "energyLevel": 8, "timestamp": 2000}).status_code == 200
    assert client.post("/api/v1/games/conductor/breath-moment", json={"sessionId": "C", "timestamp": 4000}).status_code == 200
    assert client.post("/api/v1/games/conductor/energy-change", json={"sessionId": "nope", "energyLevel": 3}).status_code == 404
    assert client.post("/api/v1/games/conductor/start", json={"sessionId": "C2"}).status_code == 400

    files = {"audio": ("c.webm", b"webm-bytes", "audio/webm")}
    r = client.post("/api/v1/games/conductor/end", data={"sessionId": "C"}, files=files)
    assert r.status_code == 200
    assert r.json()["energyChanges"] == 1 and r.json()["breathMoments"] == 1
    assert client.post("/api/v1/games/conductor/end", data={"sessionId": "C"}, files=files).status_code == 409

    status = _poll(client, "/api/v1/games/conductor/session/C", until={"evaluated", "evaluation_failed"})
    assert status["status"] == "evaluated"
    assert status["evaluation"]["overallPerformance"]["score"] >= 4
    assert status["energyChanges"][0]["energyLevel"] == 8
    assert status["evaluatedAt"] is not None
    assert client.get("/api/v1/audio/C").content == b"webm-bytes"


def test_triple_step_flow(client):
    files = {"audio": ("t.webm", b"triple", "audio/webm")}
    data = {
        "sessionId": "T",
        "topic": "Gardening",
        "wordList": '["comet", "violin"]',
        "integratedWords": '["comet"]',
        "missedWords": "violin",
        "transcription": "gardening with a comet",
        "totalTime": "60",
        "actualTime": "45",
        "completedEarly": "true",
    }
    r = client.post("/api/v1/games/triple-step/evaluate", data=data, files=files)
    assert r.status_code == 200
    assert r.json()["wordsGiven"] == 2

    status = _poll(client, "/api/v1/games/triple-step/session/T")
    assert status["status"] == "completed"
    assert status["missedWords"] == ["violin"]
    assert status["completedEarly"] is True
    assert "overall" in status["evaluation"]

    bad = dict(data, sessionId="T2", wordList="[not json")
    assert client.post("/api/v1/games/triple-step/evaluate", data=bad, files=files).status_code == 400


def test_game_agnostic_status_and_debug(client):
    client.post("/api/v1/games/conductor/start", json={"sessionId": "D", "topic": "x"})
    r = client.get("/api/v1/session/D")
    assert r.status_code == 200
    assert r.json()["gameType"] == "conductor"
    # A conductor id is not visible through another game's route
    assert client.get("/api/v1/games/rapid-fire/session/D").status_code == 404

    dump = client.get("/api/v1/debug/state").json()
    assert dump["totalSessions"] == 1
    assert dump["sessions"][0]["sessionId"] == "D"

    sm = client.get("/service-metrics").json()
    assert sm["sessionCount"] == 1
    assert sm["drainState"] in {"idle", "draining"}


def test_analytics_routes(client):
    r = client.get("/api/v1/analytics/u1")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True and body["timeframe"] == "30d"
    assert body["analytics"]["recommendations"][0]["type"] == "getting_started"

    assert client.get("/api/v1/analytics/u1?timeframe=1y").status_code == 400
    assert client.get("/api/v1/analytics/u1/skills").status_code == 400

    files = {"audio": ("t.webm", b"triple", "audio/webm")}
    client.post(
        "/api/v1/games/triple-step/evaluate",
        data={"sessionId": "TU", "topic": "x", "userId": "u1"},
        files=files,
    )
    _poll(client, "/api/v1/games/triple-step/session/TU")
    body = {}
    for _ in range(100):
        body = client.get("/api/v1/analytics/u1?timeframe=all").json()
        if body["analytics"]["overview"]["completedSessions"] == 1:
            break
        time.sleep(0.01)
    assert body["analytics"]["overview"]["totalSessions"] == 1
    assert body["analytics"]["overview"]["completedSessions"] == 1
    assert body["analytics"]["gameBreakdown"]["triple-step"]["totalSessions"] == 1

    skill = client.get("/api/v1/analytics/u1/skills?skill=overall&gameType=triple-step").json()
    assert skill["skillData"]["totalSessions"] == 1

    ach = client.get("/api/v1/analytics/u1/achievements").json()
    assert ach["achievements"]["firstSession"]["unlocked"] is True
