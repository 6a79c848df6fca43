"""Read-only context queries used by the executor pipelines.

PostgresContextProvider reads the application's own tables (onboarding
profile, daily check-ins, workout sessions, users). Any object exposing the
same coroutine methods can be passed to the executor instead.
"""

import json
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

MAX_HISTORY = 20
MAX_PERIOD_SESSIONS = 80


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _json_value(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _isoformat(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def summarize_workout(payload: Any) -> Dict[str, Any]:
    """Reduce a logged workout payload to per-exercise and session totals."""
    payload = payload if isinstance(payload, dict) else {}
    exercises = payload.get("exercises") if isinstance(payload.get("exercises"), list) else []

    summary_exercises = []
    for exercise in exercises:
        if not isinstance(exercise, dict):
            continue
        sets = [s for s in exercise.get("sets") or [] if isinstance(s, dict)]
        reps = [r for r in (_to_number(s.get("reps")) for s in sets) if r is not None]
        weights = [w for w in (_to_number(s.get("weight")) for s in sets) if w is not None]
        volume = 0.0
        for s in sets:
            r = _to_number(s.get("reps"))
            w = _to_number(s.get("weight"))
            if r and r > 0 and w and w > 0:
                volume += r * w
        summary_exercises.append(
            {
                "name": str(exercise.get("name") or "").strip(),
                "effort": exercise.get("effort"),
                "done": bool(exercise.get("done")),
                "set_count": len(sets),
                "reps": reps,
                "weights": weights,
                "total_reps": sum(reps),
                "total_volume_kg": round(volume, 1),
            }
        )

    feedback = payload.get("feedback") if isinstance(payload.get("feedback"), dict) else {}
    return {
        "title": payload.get("title"),
        "location": payload.get("location"),
        "duration_min": payload.get("durationMin"),
        "session_difficulty": _to_number(feedback.get("sessionRpe")),
        "totals": {
            "total_exercises": len(summary_exercises),
            "total_sets": sum(e["set_count"] for e in summary_exercises),
            "total_reps": sum(e["total_reps"] for e in summary_exercises),
            "total_volume_kg": round(
                sum(e["total_volume_kg"] for e in summary_exercises), 1
            ),
        },
        "exercises": summary_exercises,
    }


def _session_snapshot(session_ref: str, finished_at: Any, payload: Any) -> Dict[str, Any]:
    payload = _json_value(payload)
    return {
        "session_ref": str(session_ref),
        "finished_at": _isoformat(finished_at),
        "payload": payload,
        "summary": summarize_workout(payload),
    }


class PostgresContextProvider:
    """Context snapshots read from the application database."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get_profile(self, owner_id: str) -> Dict[str, Any]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data, summary FROM onboardings WHERE user_id::text = $1 LIMIT 1",
                owner_id,
            )
        data = (_json_value(row["data"]) if row else None) or {}
        summary = (_json_value(row["summary"]) if row else None) or {}
        schedule = data.get("schedule") or summary.get("schedule") or {}
        return {
            "goal": data.get("goal", summary.get("goal")),
            "experience": data.get("experience", summary.get("experience")),
            "days_per_week": schedule.get("daysPerWeek", summary.get("freq")),
        }

    async def get_latest_checkin(self, owner_id: str) -> Optional[Dict[str, Any]]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT created_at, sleep_quality, energy_level, stress_level,
                       available_minutes, pain
                FROM daily_check_ins
                WHERE user_id::text = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                owner_id,
            )
        if not row:
            return None

        pain = _json_value(row["pain"])
        pain_items = []
        if isinstance(pain, list):
            for item in pain:
                if not isinstance(item, dict):
                    continue
                location = str(item.get("location") or "").strip()
                if not location:
                    continue
                level = _to_number(item.get("level"))
                level = 5 if level is None else max(1, min(10, round(level)))
                pain_items.append({"location": location, "level": level})

        return {
            "created_at": _isoformat(row["created_at"]),
            "sleep_quality": row["sleep_quality"],
            "energy_level": row["energy_level"],
            "stress_level": row["stress_level"],
            "available_minutes": _to_number(row["available_minutes"]),
            "pain": pain_items or None,
        }

    async def get_session(self, owner_id: str, session_ref: str) -> Optional[Dict[str, Any]]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, finished_at, payload
                FROM workout_sessions
                WHERE user_id::text = $1 AND id::text = $2
                LIMIT 1
                """,
                owner_id,
                session_ref,
            )
        if not row or row["payload"] is None:
            return None
        return _session_snapshot(row["id"], row["finished_at"], row["payload"])

    async def get_recent_sessions(
        self, owner_id: str, before: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, finished_at, payload
                FROM workout_sessions
                WHERE user_id::text = $1 AND finished_at < $2
                ORDER BY finished_at DESC
                LIMIT $3
                """,
                owner_id,
                before,
                max(0, min(MAX_HISTORY, limit)),
            )
        return [
            _session_snapshot(r["id"], r["finished_at"], r["payload"])
            for r in rows
            if r["payload"] is not None
        ]

    async def get_sessions_in_period(
        self, owner_id: str, start: datetime, end: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, finished_at, payload
                FROM workout_sessions
                WHERE user_id::text = $1
                  AND finished_at >= $2
                  AND finished_at <= $3
                ORDER BY finished_at ASC
                LIMIT $4
                """,
                owner_id,
                start,
                end,
                max(1, min(MAX_PERIOD_SESSIONS, limit)),
            )
        return [
            _session_snapshot(r["id"], r["finished_at"], r["payload"])
            for r in rows
            if r["payload"] is not None
        ]

    async def count_sessions_between(
        self, owner_id: str, start: datetime, end: datetime
    ) -> int:
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM workout_sessions
                WHERE user_id::text = $1
                  AND finished_at >= $2
                  AND finished_at <= $3
                """,
                owner_id,
                start,
                end,
            )
        return int(count or 0)

    async def get_notification_destination(self, owner_id: str) -> Optional[str]:
        async with self.db_pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT tg_id FROM users WHERE id::text = $1 LIMIT 1", owner_id
            )
        if value is None:
            return None
        destination = str(value).strip()
        return destination or None
