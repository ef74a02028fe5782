"""Progress analytics over a user's persisted session history.

Records come from the session store and look like::

    {"game_type": "conductor", "created_at": "...", "completed": true,
     "duration": 120, "session_data": {"averageScores": {"energyRange": 7.5}}}

camelCase keys (``gameType``, ``createdAt``, ``sessionData``) are accepted too.
A missing or non-numeric score is left out of every mean, never read as 0.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import GameType

TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90}
GAME_TYPES = [g.value for g in GameType]
GAME_NAMES = {
    GameType.RAPID_FIRE.value: "Rapid Fire Analogies",
    GameType.CONDUCTOR.value: "The Conductor",
    GameType.TRIPLE_STEP.value: "Triple Step",
}

WEAK_SKILL_THRESHOLD = 6.0
RECENT_SESSIONS_TARGET = 3
SESSION_MILESTONES = {"firstSession": 1, "tenSessions": 10, "fiftySessions": 50, "hundredSessions": 100}
GAME_MILESTONES = {
    "rapidFireMaster": (GameType.RAPID_FIRE.value, 20),
    "conductorPro": (GameType.CONDUCTOR.value, 15),
    "tripleStepExpert": (GameType.TRIPLE_STEP.value, 10),
}
HIGH_SCORE = 8.0
CONSISTENT_SCORE = 7.0
CONSISTENT_MIN_SESSIONS = 5
IMPROVEMENT_SLOPE = 0.5
IMPROVEMENT_MIN_SESSIONS = 5


def trend_slope(scores: Sequence[float]) -> float:
    """Least-squares slope of ``scores`` against their index 0..N-1."""
    n = len(scores)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_y = float(sum(scores))
    sum_xy = float(sum(i * s for i, s in enumerate(scores)))
    sum_x2 = float(sum(i * i for i in range(n)))
    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denom


# ---- record accessors ----

def _num(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def game_type_of(record: Dict[str, Any]) -> Optional[str]:
    return record.get("game_type") or record.get("gameType")


def created_at_of(record: Dict[str, Any]) -> Optional[datetime]:
    raw = record.get("created_at", record.get("createdAt"))
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        # Epoch milliseconds
        return datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def average_scores_of(record: Dict[str, Any]) -> Dict[str, float]:
    data = record.get("session_data") or record.get("sessionData") or {}
    raw = data.get("averageScores") if isinstance(data, dict) else None
    if not isinstance(raw, dict):
        return {}
    out: Dict[str, float] = {}
    for k, v in raw.items():
        val = _num(v)
        if val is not None:
            out[str(k)] = val
    return out


def session_score(record: Dict[str, Any]) -> Optional[float]:
    """``overall`` when present, else the mean of the record's skill scores."""
    scores = average_scores_of(record)
    if "overall" in scores:
        return scores["overall"]
    if not scores:
        return None
    return sum(scores.values()) / len(scores)


def _duration(record: Dict[str, Any]) -> float:
    return _num(record.get("duration")) or 0.0


def _mean(values: Iterable[float]) -> float:
    vals = list(values)
    return sum(vals) / len(vals) if vals else 0.0


def _round1(v: float) -> float:
    return round(v * 10) / 10


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def sort_chronological(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(records, key=lambda r: created_at_of(r) or epoch)


def filter_by_timeframe(records: Iterable[Dict[str, Any]], timeframe: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Keep records created within the window. Unknown timeframes keep everything."""
    days = TIMEFRAMES.get(timeframe)
    if days is None:
        return list(records)
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    out = []
    for r in records:
        dt = created_at_of(r)
        if dt is not None and dt >= cutoff:
            out.append(r)
    return out


def mean_session_score(records: Iterable[Dict[str, Any]]) -> float:
    return _mean(s for s in (session_score(r) for r in records) if s is not None)


# ---- aggregations ----

def overview_stats(records: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    ordered = sort_chronological(records)
    total = len(ordered)
    completed = sum(1 for r in ordered if r.get("completed"))
    total_duration = sum(_duration(r) for r in ordered)
    all_scores = [v for r in ordered for v in average_scores_of(r).values()]
    series = [s for s in (session_score(r) for r in ordered) if s is not None]
    return {
        "totalSessions": total,
        "completedSessions": completed,
        "completionRate": (completed / total) * 100 if total else 0.0,
        "totalDuration": total_duration,
        "averageScore": _round1(_mean(all_scores)),
        "improvementRate": round(trend_slope(series), 3),
        "averageSessionDuration": round(total_duration / total) if total else 0,
    }


def game_breakdown(records: Sequence[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    for game in GAME_TYPES:
        rows = [r for r in records if game_type_of(r) == game]
        completed = sum(1 for r in rows if r.get("completed"))
        total_duration = sum(_duration(r) for r in rows)
        dates = [d for d in (created_at_of(r) for r in rows) if d is not None]
        out[game] = {
            "totalSessions": len(rows),
            "completedSessions": completed,
            "completionRate": (completed / len(rows)) * 100 if rows else 0.0,
            "totalDuration": total_duration,
            "averageScore": _round1(mean_session_score(rows)),
            "averageSessionDuration": round(total_duration / len(rows)) if rows else 0,
            "lastPlayed": _iso(max(dates)) if dates else None,
        }
    return out


def skill_progress(records: Sequence[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Per-skill score series (chronological) with average and trend."""
    skills: Dict[str, Dict[str, Any]] = {}
    for r in sort_chronological(records):
        for skill, score in average_scores_of(r).items():
            entry = skills.setdefault(skill, {"scores": [], "trend": 0.0, "averageScore": 0.0})
            entry["scores"].append(
                {"score": score, "date": _iso(created_at_of(r)), "gameType": game_type_of(r)}
            )
    for entry in skills.values():
        values = [s["score"] for s in entry["scores"]]
        entry["trend"] = trend_slope(values)
        entry["averageScore"] = _mean(values)
    return skills


def week_key(dt: datetime) -> str:
    year, week, _ = dt.isocalendar()
    return f"{year}-W{week:02d}"


def month_key(dt: datetime) -> str:
    return f"{dt.year}-{dt.month:02d}"


def _bucket(records: Sequence[Dict[str, Any]], key_fn) -> List[Dict[str, Any]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for r in records:
        dt = created_at_of(r)
        if dt is None:
            continue
        groups.setdefault(key_fn(dt), []).append(r)
    return [
        {
            "period": key,
            "averageScore": _round1(mean_session_score(rows)),
            "totalSessions": len(rows),
            "totalDuration": sum(_duration(r) for r in rows),
        }
        for key, rows in sorted(groups.items())
    ]


def trends(records: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    return {"weekly": _bucket(records, week_key), "monthly": _bucket(records, month_key)}


def achievements(records: Sequence[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    ordered = sort_chronological(records)
    out: Dict[str, Dict[str, Any]] = {}
    for name, count in SESSION_MILESTONES.items():
        unlocked = len(ordered) >= count
        out[name] = {"unlocked": unlocked, "date": _iso(created_at_of(ordered[count - 1])) if unlocked else None}

    scored = [(r, s) for r, s in ((r, session_score(r)) for r in ordered) if s is not None]
    values = [s for _, s in scored]
    out["highScorer"] = {"unlocked": False, "date": None}
    out["consistentPerformer"] = {"unlocked": False, "date": None}
    out["improvementMaster"] = {"unlocked": False, "date": None}
    if values:
        best = max(values)
        if best >= HIGH_SCORE:
            first_best = next(r for r, s in scored if s == best)
            out["highScorer"] = {"unlocked": True, "date": _iso(created_at_of(first_best))}
        if len(values) >= CONSISTENT_MIN_SESSIONS and _mean(values) >= CONSISTENT_SCORE:
            out["consistentPerformer"] = {"unlocked": True, "date": _iso(created_at_of(scored[-1][0]))}
        if len(values) >= IMPROVEMENT_MIN_SESSIONS and trend_slope(values) >= IMPROVEMENT_SLOPE:
            out["improvementMaster"] = {"unlocked": True, "date": _iso(created_at_of(scored[-1][0]))}

    for name, (game, count) in GAME_MILESTONES.items():
        rows = [r for r in ordered if game_type_of(r) == game]
        unlocked = len(rows) >= count
        out[name] = {"unlocked": unlocked, "date": _iso(created_at_of(rows[count - 1])) if unlocked else None}
    return out


def format_skill_name(skill: str) -> str:
    """``energyRange`` -> ``Energy Range``."""
    spaced = re.sub(r"([A-Z])", r" \1", skill).strip()
    return spaced[:1].upper() + spaced[1:]


def format_game_name(game_type: str) -> str:
    return GAME_NAMES.get(game_type, game_type)


def recommendations(records: Sequence[Dict[str, Any]], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    if not records:
        return [
            {
                "type": "getting_started",
                "title": "Start Your Journey",
                "description": "Complete your first session to begin tracking your progress!",
                "priority": "high",
            }
        ]
    out: List[Dict[str, Any]] = []
    progress = skill_progress(records)
    weak = sorted(
        ((skill, data["averageScore"]) for skill, data in progress.items() if data["averageScore"] < WEAK_SKILL_THRESHOLD),
        key=lambda kv: kv[1],
    )
    if weak:
        skill, avg = weak[0]
        name = format_skill_name(skill)
        out.append(
            {
                "type": "skill_improvement",
                "title": f"Focus on {name}",
                "description": f"Your {name} score is {avg:.1f}/10. Try practicing more to improve this skill.",
                "priority": "high",
                "skill": skill,
            }
        )
    breakdown = game_breakdown(records)
    unplayed = [g for g in GAME_TYPES if breakdown[g]["totalSessions"] == 0]
    if unplayed:
        out.append(
            {
                "type": "try_new_game",
                "title": "Try a New Game",
                "description": f"Expand your skills by trying the {format_game_name(unplayed[0])} game.",
                "priority": "medium",
                "gameType": unplayed[0],
            }
        )
    if len(filter_by_timeframe(records, "7d", now=now)) < RECENT_SESSIONS_TARGET:
        out.append(
            {
                "type": "practice_frequency",
                "title": "Practice Regularly",
                "description": "Try to practice at least 3 times per week for best results.",
                "priority": "medium",
            }
        )
    return out


def analyze_skill(records: Sequence[Dict[str, Any]], skill: str, game_type: Optional[str] = None) -> Dict[str, Any]:
    rows = [r for r in records if game_type is None or game_type_of(r) == game_type]
    series = []
    for r in sort_chronological(rows):
        score = average_scores_of(r).get(skill)
        if score is not None:
            series.append({"score": score, "date": _iso(created_at_of(r)), "gameType": game_type_of(r)})
    values = [s["score"] for s in series]
    return {
        "skill": skill,
        "gameType": game_type,
        "totalSessions": len(series),
        "averageScore": _mean(values),
        "trend": trend_slope(values),
        "scores": series,
        "improvement": values[-1] - values[0] if len(values) >= 2 else 0.0,
    }


def build_progress_analytics(records: Sequence[Dict[str, Any]], timeframe: str = "30d", now: Optional[datetime] = None) -> Dict[str, Any]:
    rows = filter_by_timeframe(records, timeframe, now=now)
    return {
        "overview": overview_stats(rows),
        "gameBreakdown": game_breakdown(rows),
        "skillProgress": skill_progress(rows),
        "trends": trends(rows),
        "achievements": achievements(rows),
        "recommendations": recommendations(rows, now=now),
    }
