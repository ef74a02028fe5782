import pytest

from oratora.models import GameType, Session, SessionStatus
from oratora.status import project_debug, project_status


def _session(game_type: GameType, slots: int = 1, **kw) -> Session:
    return Session(id="S", game_type=game_type, payload=kw.pop("payload", {}), slots=[None] * slots, created_at=1.5, **kw)


@pytest.mark.parametrize("status", list(SessionStatus))
@pytest.mark.parametrize("game_type", list(GameType))
def test_every_status_projects_without_optional_fields(game_type, status):
    s = _session(game_type, slots=2 if game_type is GameType.RAPID_FIRE else 1)
    s.status = status
    view = project_status(s, queue_length=4, is_processing=True)
    assert view["sessionId"] == "S"
    assert view["status"] == status.value
    assert view["evaluation"] is None
    assert view["completedAt"] is None
    assert view["evaluatedAt"] is None
    assert view["createdAt"] == 1500
    assert view["queueLength"] == 4
    assert view["isProcessing"] is True


def test_rapid_fire_view_has_per_prompt_lists():
    s = _session(GameType.RAPID_FIRE, slots=3, payload={"difficulty": "hard"})
    s.slots[1] = {"promptIndex": 2, "evaluation": {"pace": {"score": 6}}, "error": False}
    view = project_status(s, 0, False)
    assert view["totalPrompts"] == 3
    assert view["completed"] == 1
    assert view["difficulty"] == "hard"
    assert view["evaluations"][0] is None and view["evaluations"][1]["promptIndex"] == 2
    assert view["responseTimes"] == [None, None, None]
    assert view["audioFiles"] == [None, None, None]


def test_conductor_view_includes_events():
    s = _session(GameType.CONDUCTOR, payload={"topic": "Bees", "duration": 3})
    s.extras = {"energyChanges": [{"energyLevel": 4}], "breathMoments": [], "endedAt": 2.0, "actualDurationMs": 500}
    s.completed_at = 2.0
    view = project_status(s, 0, False)
    assert view["topic"] == "Bees"
    assert view["energyChanges"] == [{"energyLevel": 4}]
    assert view["breathMoments"] == []
    assert view["endedAt"] == 2000
    assert view["completedAt"] == 2000
    assert view["actualDuration"] == 500


def test_triple_step_view_defaults():
    s = _session(GameType.TRIPLE_STEP, payload={"topic": "Kites"})
    view = project_status(s, 0, False)
    assert view["wordList"] == []
    assert view["integratedWords"] == []
    assert view["completedEarly"] is False
    assert view["audioFile"] is None


def test_debug_dump_lists_sessions_and_queue():
    s = _session(GameType.CONDUCTOR)
    dump = project_debug([s], [{"sessionId": "Q"}], 1, True, {"sessionId": "S"})
    assert dump["totalSessions"] == 1
    assert dump["sessions"][0]["sessionId"] == "S"
    assert dump["queueItems"] == [{"sessionId": "Q"}]
    assert dump["inFlight"] == {"sessionId": "S"}
