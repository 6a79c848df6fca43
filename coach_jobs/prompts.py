"""Structured generation requests for each job kind."""

from typing import Any, Dict, List, Optional

SYSTEM_INSTRUCTIONS = (
    "You are an experienced strength and fitness coach. Write in plain, direct "
    "language addressed to the athlete. Do not mention that you are an AI, do "
    "not use emoji and do not ask questions. Only use facts present in the input."
)

RESPONSE_SHAPE = {
    "message": {"bullets": ["string"]},
    "detail": {
        "title": "string",
        "bullets": ["string"],
        "actions": [{"title": "string", "how": "string", "why": "string"}],
    },
}

SESSION_TASK = (
    "Review the session in context. Return 3-5 short bullets for a chat "
    "message, and for the app a title, the same bullets and 2-3 concrete "
    "actions for next time (what to do, how, and why). Respond with a JSON "
    "object matching response_shape."
)

PERIOD_TASK = (
    "Summarize training and wellbeing over the period. Return 3-5 short "
    "bullets for a chat message, and for the app a title, the same bullets "
    "and 2-3 concrete actions for the next week. Respond with a JSON object "
    "matching response_shape."
)

MAX_RECENT_SESSIONS = 8
MAX_SETS_PER_EXERCISE = 12


def _session_exercises(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    exercises = payload.get("exercises") if isinstance(payload, dict) else None
    if not isinstance(exercises, list):
        return []
    out = []
    for exercise in exercises:
        if not isinstance(exercise, dict):
            continue
        sets = exercise.get("sets") if isinstance(exercise.get("sets"), list) else []
        out.append(
            {
                "name": exercise.get("name"),
                "effort": exercise.get("effort"),
                "sets": [
                    {"reps": s.get("reps"), "weight": s.get("weight")}
                    for s in sets[:MAX_SETS_PER_EXERCISE]
                    if isinstance(s, dict)
                ],
            }
        )
    return out


def build_session_request(
    profile: Dict[str, Any],
    checkin: Optional[Dict[str, Any]],
    session: Dict[str, Any],
    recent: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """Build the generation payload for a session review."""
    payload = session.get("payload") or {}
    return {
        "task": SESSION_TASK,
        "response_shape": RESPONSE_SHAPE,
        "input": {
            "user": profile,
            "check_in": checkin,
            "session": {
                "id": session.get("session_ref"),
                "finished_at": session.get("finished_at"),
                "summary": session.get("summary"),
                "exercises": _session_exercises(payload),
            },
            "recent_sessions": [
                {
                    "id": s.get("session_ref"),
                    "finished_at": s.get("finished_at"),
                    "summary": s.get("summary"),
                }
                for s in recent[:MAX_RECENT_SESSIONS]
            ],
        },
    }


def build_period_request(
    profile: Dict[str, Any],
    checkin: Optional[Dict[str, Any]],
    period_start: str,
    period_end: str,
    sessions: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """Build the generation payload for a period summary."""
    return {
        "task": PERIOD_TASK,
        "response_shape": RESPONSE_SHAPE,
        "input": {
            "user": profile,
            "check_in_latest": checkin,
            "period": {"start": period_start, "end": period_end},
            "sessions": [
                {
                    "id": s.get("session_ref"),
                    "finished_at": s.get("finished_at"),
                    "summary": s.get("summary"),
                }
                for s in sessions
            ],
        },
    }
