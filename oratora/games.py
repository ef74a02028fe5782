"""Per-game evaluation semantics.

Each game supplies its response schema, the prompt for one job, the neutral
placeholder written when scoring fails, the record stored in a slot, and the
terminal status rules. The queue and registry logic is shared.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import EvaluationJob, GameType, Session, SessionStatus, to_ms

NEUTRAL_SCORE = 5
FAILED_FEEDBACK = "Evaluation failed"


def _scored(description: str, **extra: Dict[str, Any]) -> Dict[str, Any]:
    props: Dict[str, Any] = {
        "score": {"type": "number", "description": description},
        "feedback": {"type": "string"},
    }
    props.update(extra)
    return {"type": "object", "properties": props, "required": list(props)}


def score_of(evaluation: Optional[Dict[str, Any]], skill: str) -> Optional[float]:
    """Numeric score for ``skill``, or None when absent or not a number."""
    item = (evaluation or {}).get(skill)
    if not isinstance(item, dict):
        return None
    val = item.get("score")
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    return float(val)


def mean_scores(evaluations: List[Optional[Dict[str, Any]]], skills: List[str]) -> Dict[str, float]:
    """Average each skill over the evaluations that carry a numeric score.

    Absent scores are left out of the mean rather than counted as a default.
    """
    out: Dict[str, float] = {}
    for skill in skills:
        vals = [v for v in (score_of(ev, skill) for ev in evaluations) if v is not None]
        if vals:
            out[skill] = round(sum(vals) / len(vals), 2)
    return out


class GameSpec:
    game_type: GameType
    skills: List[str] = []
    schema: Dict[str, Any] = {}
    # Terminal status when every slot scored successfully
    success_status: SessionStatus = SessionStatus.COMPLETED
    # Terminal status when a placeholder had to be substituted
    failure_status: SessionStatus = SessionStatus.EVALUATION_FAILED

    def build_prompt(self, job: EvaluationJob) -> str:
        raise NotImplementedError

    def placeholder(self, job: EvaluationJob) -> Dict[str, Any]:
        return {skill: {"score": NEUTRAL_SCORE, "feedback": FAILED_FEEDBACK} for skill in self.skills}

    def slot_record(self, job: EvaluationJob, evaluation: Dict[str, Any], failed: bool) -> Dict[str, Any]:
        return {
            "evaluation": evaluation,
            "timestamp": to_ms(job.context.get("submittedAt")),
            "error": failed,
        }

    def apply_extras(self, session: Session, job: EvaluationJob, audio_name: Optional[str]) -> None:
        session.extras["audioFile"] = audio_name

    def terminal_status(self, session: Session) -> SessionStatus:
        return self.failure_status if session.error else self.success_status

    def finalize(self, session: Session) -> Optional[Dict[str, Any]]:
        """Session-level evaluation once every slot is filled."""
        slot = session.slots[0] if session.slots else None
        return (slot or {}).get("evaluation")

    def evaluations(self, session: Session) -> List[Optional[Dict[str, Any]]]:
        return [(s or {}).get("evaluation") for s in session.slots]

    def average_scores(self, session: Session) -> Dict[str, float]:
        return mean_scores(self.evaluations(session), self.skills)

    def duration_seconds(self, session: Session) -> float:
        return 0.0

    def initial_record(self, session: Session) -> Dict[str, Any]:
        """Session-store record written when a session is created."""
        return {
            "user_id": session.user_id,
            "session_key": session.id,
            "game_type": self.game_type.value,
            "topic": session.payload.get("topic") or session.payload.get("difficulty"),
            "duration": 0,
            "energy_levels": [],
            "session_data": {k: v for k, v in session.payload.items()},
            "audio_files": [],
            "completed": False,
            "created_at": datetime.fromtimestamp(session.created_at, tz=timezone.utc).isoformat(),
        }

    def energy_levels(self, session: Session) -> List[float]:
        return [v for v in (score_of(ev, "energy") for ev in self.evaluations(session)) if v is not None]

    def completion_record(self, session: Session) -> Dict[str, Any]:
        """Patch written to the session store once the session is terminal."""
        audio_files = session.extras.get("audioFiles")
        if audio_files is None:
            audio_files = [session.extras.get("audioFile")]
        return {
            "duration": round(self.duration_seconds(session)),
            "energy_levels": self.energy_levels(session),
            "session_data": {
                **session.payload,
                "evaluations": list(session.slots),
                "averageScores": self.average_scores(session),
                "error": session.error,
            },
            "audio_files": [a for a in audio_files if a],
            "completed": True,
        }


class RapidFireGame(GameSpec):
    game_type = GameType.RAPID_FIRE
    skills = ["responseRate", "pace", "energy"]
    schema = {
        "type": "object",
        "properties": {
            "responseRate": _scored("Score from 1-10, or 0 for no speech."),
            "pace": _scored("Score from 1-10 for pace and flow."),
            "energy": _scored("Score from 1-10 for energy and confidence."),
        },
        "required": ["responseRate", "pace", "energy"],
    }
    # Slot failures are flagged per slot; the session still just completes.
    success_status = SessionStatus.COMPLETED
    failure_status = SessionStatus.COMPLETED

    def build_prompt(self, job: EvaluationJob) -> str:
        c = job.context
        return (
            "You are an expert public speaking coach evaluating a rapid-fire analogy game response.\n"
            "Analyze the attached audio and evaluate the speaker's delivery.\n\n"
            "If the audio is silent or contains no discernible speech, set every score to 0 and say "
            "that no speech was detected.\n\n"
            f"Difficulty: {c.get('difficulty')}\n"
            f"Prompt given: \"{c.get('prompt')}\"\n"
            f"Time limit: {c.get('seconds')} seconds\n"
            f"This is prompt {c.get('promptIndex')} of {c.get('totalPrompts')}.\n\n"
            "Score 1-10 with brief, specific feedback for:\n"
            "1. responseRate: how quickly and consistently the speaker engaged with the prompt.\n"
            "2. pace: speaking speed and rhythm, smooth or choppy.\n"
            "3. energy: how energetic and confident the speaker sounded.\n"
            "Do not judge the cleverness or correctness of the analogy, only the audible delivery."
        )

    def slot_record(self, job: EvaluationJob, evaluation: Dict[str, Any], failed: bool) -> Dict[str, Any]:
        return {
            "prompt": job.context.get("prompt"),
            "promptIndex": job.slot_index + 1,
            "evaluation": evaluation,
            "timestamp": to_ms(job.context.get("submittedAt")),
            "error": failed,
        }

    def apply_extras(self, session: Session, job: EvaluationJob, audio_name: Optional[str]) -> None:
        n = session.expected_count
        times = session.extras.setdefault("responseTimes", [None] * n)
        files = session.extras.setdefault("audioFiles", [None] * n)
        times[job.slot_index] = {
            "responseTime": job.context.get("responseTime"),
            "totalTime": job.context.get("totalTime"),
        }
        files[job.slot_index] = audio_name

    def finalize(self, session: Session) -> Optional[Dict[str, Any]]:
        return {
            "averageScores": self.average_scores(session),
            "failedSlots": [i for i, s in enumerate(session.slots) if (s or {}).get("error")],
        }

    def duration_seconds(self, session: Session) -> float:
        total = 0.0
        for t in session.extras.get("responseTimes") or []:
            val = (t or {}).get("totalTime")
            if isinstance(val, (int, float)) and not isinstance(val, bool):
                total += float(val)
        return total


class ConductorGame(GameSpec):
    game_type = GameType.CONDUCTOR
    skills = ["responseSpeed", "energyRange", "contentContinuity", "breathRecovery", "overallPerformance"]
    schema = {
        "type": "object",
        "properties": {
            "responseSpeed": _scored("Score from 1-10 for how quickly they adapted to energy changes"),
            "energyRange": _scored("Score from 1-10 for the energy range demonstrated"),
            "contentContinuity": _scored("Score from 1-10 for maintaining topic focus"),
            "breathRecovery": _scored("Score from 1-10 for use of breath moments"),
            "overallPerformance": {
                "type": "object",
                "properties": {
                    "score": {"type": "number", "description": "Overall score from 1-10"},
                    "summary": {"type": "string"},
                },
                "required": ["score", "summary"],
            },
        },
        "required": ["responseSpeed", "energyRange", "contentContinuity", "breathRecovery", "overallPerformance"],
    }
    success_status = SessionStatus.EVALUATED
    failure_status = SessionStatus.EVALUATION_FAILED

    def build_prompt(self, job: EvaluationJob) -> str:
        c = job.context
        changes = c.get("energyChanges") or []
        breaths = c.get("breathMoments") or []
        change_lines = "\n".join(
            f"{i + 1}. Energy level {ch.get('energyLevel')} at {round((ch.get('timestamp') or 0) / 1000)}s"
            for i, ch in enumerate(changes)
        ) or "(none)"
        breath_lines = "\n".join(
            f"{i + 1}. Breath moment at {round((b.get('timestamp') or 0) / 1000)}s"
            for i, b in enumerate(breaths)
        ) or "(none)"
        return (
            "You are an expert public speaking coach evaluating a \"Conductor\" energy modulation session.\n"
            "Analyze the attached audio against the session timeline below.\n\n"
            "If the audio is silent or contains no discernible speech, set every score to 0 and say "
            "that no speech was detected.\n\n"
            f"Topic: \"{c.get('topic')}\"\n"
            f"Intended duration: {c.get('duration')} minutes\n"
            f"Actual duration: {round((c.get('actualDurationMs') or 0) / 1000)} seconds\n"
            f"Energy changes: {len(changes)}\nBreath moments: {len(breaths)}\n\n"
            f"Energy changes timeline:\n{change_lines}\n\n"
            f"Breath moments timeline:\n{breath_lines}\n\n"
            "Score 1-10 with specific feedback for:\n"
            "1. responseSpeed: how quickly the voice matched each new energy level.\n"
            "2. energyRange: the actual range of vocal energy demonstrated.\n"
            "3. contentContinuity: staying on topic through the transitions.\n"
            "4. breathRecovery: using the breath moments to pause and reset.\n"
            "5. overallPerformance: an overall score with a short summary.\n"
            "Focus on delivery, not content quality."
        )

    def placeholder(self, job: EvaluationJob) -> Dict[str, Any]:
        out = super().placeholder(job)
        out["overallPerformance"] = {"score": NEUTRAL_SCORE, "summary": FAILED_FEEDBACK}
        return out

    def duration_seconds(self, session: Session) -> float:
        return (session.extras.get("actualDurationMs") or 0) / 1000.0

    def energy_levels(self, session: Session) -> List[float]:
        # Levels the user was cued through, in order
        out = []
        for ch in session.extras.get("energyChanges") or []:
            level = ch.get("energyLevel")
            if isinstance(level, (int, float)) and not isinstance(level, bool):
                out.append(float(level))
        return out


class TripleStepGame(GameSpec):
    game_type = GameType.TRIPLE_STEP
    skills = ["primary", "secondary", "tertiary", "recovery", "overall"]
    _strings = {"type": "array", "items": {"type": "string"}}
    schema = {
        "type": "object",
        "properties": {
            "primary": _scored(
                "Score from 1-10 for speaking the random words within the time limit",
                wordsIntegrated={"type": "number"},
                wordsMissed={"type": "number"},
            ),
            "secondary": _scored(
                "Score from 1-10 for smooth vs awkward integration",
                smoothIntegrations=_strings,
                awkwardIntegrations=_strings,
            ),
            "tertiary": _scored(
                "Score from 1-10 for keeping the main topic coherent",
                coherenceLevel={"type": "string"},
            ),
            "recovery": _scored(
                "Score from 1-10 for handling difficult words",
                recoveryStrategies=_strings,
            ),
            "overall": _scored(
                "Overall score from 1-10",
                strengths=_strings,
                areasForImprovement=_strings,
            ),
            "wordVerification": {
                "type": "object",
                "properties": {
                    "integratedWordsDetected": _strings,
                    "missedWordsDetected": _strings,
                },
            },
        },
        "required": ["primary", "secondary", "tertiary", "recovery", "overall"],
    }
    success_status = SessionStatus.COMPLETED
    failure_status = SessionStatus.EVALUATION_FAILED

    def build_prompt(self, job: EvaluationJob) -> str:
        c = job.context
        words = c.get("wordList") or []
        word_lines = "\n".join(f"{i + 1}. {w}" for i, w in enumerate(words)) or "(none)"
        return (
            "You are an expert public speaking coach evaluating a Triple Step speech game.\n"
            "Analyze the attached audio and the transcript, then answer in the requested JSON shape.\n\n"
            "If there is no discernible speech, set every score to 0 and say so in the feedback.\n\n"
            f"Main topic: \"{c.get('topic')}\"\n"
            f"Words given: {len(words)}\n"
            f"Words integrated (client): {len(c.get('integratedWords') or [])}\n"
            f"Words missed (client): {len(c.get('missedWords') or [])}\n"
            f"Time allocated: {c.get('totalTime')} seconds\n"
            f"Time spent: {c.get('actualTime')} seconds\n"
            f"Completed early: {'Yes' if c.get('completedEarly') else 'No'}\n"
            f"Transcript: \"{c.get('transcription') or ''}\"\n\n"
            f"Word list:\n{word_lines}\n\n"
            "Verify each word against both the transcript and the audio, and fill wordVerification.\n"
            "Score 1-10: primary (word integration success), secondary (integration smoothness), "
            "tertiary (topic coherence), recovery (handling difficult words), overall."
        )

    def placeholder(self, job: EvaluationJob) -> Dict[str, Any]:
        out = super().placeholder(job)
        integrated = list(job.context.get("integratedWords") or [])
        missed = list(job.context.get("missedWords") or [])
        out["primary"].update({"wordsIntegrated": len(integrated), "wordsMissed": len(missed)})
        out["secondary"].update({"smoothIntegrations": [], "awkwardIntegrations": []})
        out["tertiary"]["coherenceLevel"] = "Unknown"
        out["recovery"]["recoveryStrategies"] = []
        out["overall"].update({"strengths": [], "areasForImprovement": []})
        return out

    def duration_seconds(self, session: Session) -> float:
        val = session.payload.get("actualTime")
        return float(val) if isinstance(val, (int, float)) and not isinstance(val, bool) else 0.0


GAMES: Dict[GameType, GameSpec] = {
    GameType.RAPID_FIRE: RapidFireGame(),
    GameType.CONDUCTOR: ConductorGame(),
    GameType.TRIPLE_STEP: TripleStepGame(),
}
