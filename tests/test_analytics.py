from datetime import datetime, timedelta, timezone

import pytest

from oratora import analytics as an

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


def _rec(days_ago: float, game="conductor", scores=None, completed=True, duration=60, camel=False):
    created = (NOW - timedelta(days=days_ago)).isoformat()
    if camel:
        return {
            "gameType": game,
            "createdAt": created,
            "completed": completed,
            "duration": duration,
            "sessionData": {"averageScores": scores or {}},
        }
    return {
        "game_type": game,
        "created_at": created,
        "completed": completed,
        "duration": duration,
        "session_data": {"averageScores": scores or {}},
    }


@pytest.mark.parametrize("scores, expected", [
    ([5, 5, 5, 5], 0.0),
    ([2, 4, 6, 8], 2.0),
    ([9, 7, 5], -2.0),
    ([7], 0.0),
    ([], 0.0),
])
def test_trend_slope(scores, expected):
    assert an.trend_slope(scores) == pytest.approx(expected)


def test_filter_by_timeframe():
    rows = [_rec(1), _rec(10), _rec(40), _rec(100)]
    assert len(an.filter_by_timeframe(rows, "7d", now=NOW)) == 1
    assert len(an.filter_by_timeframe(rows, "30d", now=NOW)) == 2
    assert len(an.filter_by_timeframe(rows, "90d", now=NOW)) == 3
    assert len(an.filter_by_timeframe(rows, "all", now=NOW)) == 4


def test_overview_excludes_missing_scores():
    rows = [
        _rec(3, scores={"overall": 4}),
        _rec(2, scores={"overall": "n/a"}),
        _rec(1, scores={"overall": 8}, completed=False),
    ]
    ov = an.overview_stats(rows)
    assert ov["totalSessions"] == 3
    assert ov["completedSessions"] == 2
    assert ov["completionRate"] == pytest.approx(200 / 3)
    # "n/a" is absent, not zero
    assert ov["averageScore"] == 6.0
    assert ov["improvementRate"] == pytest.approx(4.0)
    assert ov["totalDuration"] == 180
    assert ov["averageSessionDuration"] == 60


def test_session_score_falls_back_to_skill_mean():
    assert an.session_score(_rec(0, scores={"pace": 6, "energy": 8})) == 7.0
    assert an.session_score(_rec(0, scores={"overall": 3, "pace": 9})) == 3.0
    assert an.session_score(_rec(0, scores={})) is None


def test_game_breakdown_covers_every_game():
    rows = [_rec(2, game="rapid-fire", scores={"pace": 6}), _rec(1, game="rapid-fire", scores={"pace": 8})]
    gb = an.game_breakdown(rows)
    assert set(gb) == {"rapid-fire", "conductor", "triple-step"}
    assert gb["rapid-fire"]["totalSessions"] == 2
    assert gb["rapid-fire"]["averageScore"] == 7.0
    assert gb["rapid-fire"]["lastPlayed"] == (NOW - timedelta(days=1)).isoformat()
    assert gb["conductor"]["lastPlayed"] is None


def test_skill_progress_is_chronological_with_trend():
    rows = [_rec(1, scores={"energyRange": 6}), _rec(3, scores={"energyRange": 4}, camel=True)]
    sp = an.skill_progress(rows)
    assert [s["score"] for s in sp["energyRange"]["scores"]] == [4.0, 6.0]
    assert sp["energyRange"]["trend"] == pytest.approx(2.0)
    assert sp["energyRange"]["averageScore"] == 5.0


def test_trends_bucket_by_iso_week_and_month():
    rows = [_rec(0), _rec(1), _rec(30)]
    t = an.trends(rows)
    assert [b["period"] for b in t["monthly"]] == ["2026-02", "2026-03"]
    assert sum(b["totalSessions"] for b in t["weekly"]) == 3
    assert an.week_key(datetime(2026, 1, 1, tzinfo=timezone.utc)) == "2026-W01"


def test_achievements_thresholds():
    rows = [_rec(20 - i, game="triple-step", scores={"overall": 7 + (i % 2)}) for i in range(10)]
    ach = an.achievements(rows)
    assert ach["firstSession"]["unlocked"] is True
    assert ach["tenSessions"]["unlocked"] is True
    assert ach["fiftySessions"] == {"unlocked": False, "date": None}
    assert ach["highScorer"]["unlocked"] is True
    assert ach["consistentPerformer"]["unlocked"] is True
    assert ach["tripleStepExpert"]["unlocked"] is True
    assert ach["rapidFireMaster"]["unlocked"] is False
    assert ach["improvementMaster"]["unlocked"] is False


def test_recommendations():
    assert an.recommendations([], now=NOW)[0]["type"] == "getting_started"
    recs = an.recommendations([_rec(20, scores={"breathRecovery": 3, "energyRange": 7})], now=NOW)
    types = [r["type"] for r in recs]
    assert types == ["skill_improvement", "try_new_game", "practice_frequency"]
    assert recs[0]["title"] == "Focus on Breath Recovery"
    assert recs[0]["description"].startswith("Your Breath Recovery score is 3.0/10")
    assert recs[1]["gameType"] == "rapid-fire"


def test_analyze_skill_filters_game_and_skips_missing():
    rows = [
        _rec(3, game="conductor", scores={"energyRange": 4}),
        _rec(2, game="conductor", scores={}),
        _rec(1, game="conductor", scores={"energyRange": 7}),
        _rec(0, game="rapid-fire", scores={"energyRange": 1}),
    ]
    out = an.analyze_skill(rows, "energyRange", "conductor")
    assert out["totalSessions"] == 2
    assert out["improvement"] == 3.0
    assert out["trend"] == pytest.approx(3.0)


def test_format_names():
    assert an.format_skill_name("overallPerformance") == "Overall Performance"
    assert an.format_game_name("triple-step") == "Triple Step"
    assert an.format_game_name("other") == "other"


def test_build_progress_analytics_shape():
    out = an.build_progress_analytics([_rec(1, scores={"overall": 6})], "7d", now=NOW)
    assert set(out) == {"overview", "gameBreakdown", "skillProgress", "trends", "achievements", "recommendations"}
    assert out["overview"]["totalSessions"] == 1
