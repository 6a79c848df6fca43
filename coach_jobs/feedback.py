"""Validation and repair of generated coach feedback."""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import pydantic
from pydantic import BaseModel, Field

from coach_jobs.errors import ValidationError
from coach_jobs.models import JobKind

MESSAGE_MAX_BULLETS = 5
DETAIL_MAX_BULLETS = 7
MAX_ACTIONS = 3
MAX_BULLET_CHARS = 240

DEFAULT_TITLES = {
    JobKind.SESSION: "Session review",
    JobKind.PERIOD: "Weekly summary",
}

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


class FeedbackAction(BaseModel):
    title: str = Field(min_length=1)
    how: str = Field(min_length=1)
    why: str = ""


class FeedbackMessage(BaseModel):
    """Short form sent through the messaging notifier."""

    bullets: List[str] = Field(min_length=1, max_length=MESSAGE_MAX_BULLETS)


class FeedbackDetail(BaseModel):
    """Long form shown in the app."""

    title: str = Field(min_length=1)
    bullets: List[str] = Field(min_length=1, max_length=DETAIL_MAX_BULLETS)
    actions: List[FeedbackAction] = Field(default_factory=list, max_length=MAX_ACTIONS)


class FeedbackResult(BaseModel):
    """The result document stored on a done job."""

    kind: JobKind
    created_at: datetime
    message: FeedbackMessage
    detail: FeedbackDetail
    meta: Optional[Dict[str, Any]] = None


def strip_code_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw or "").strip()


def normalize_bullets(items: Any, limit: int) -> List[str]:
    """
    Clean a list of bullet strings.

    Trims and collapses whitespace, removes question marks, truncates long
    bullets, drops empties and case-insensitive duplicates, keeps at most
    `limit` items.
    """
    if not isinstance(items, list):
        return []

    bullets: List[str] = []
    seen = set()
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = _WHITESPACE_RE.sub(" ", str(item)).strip()
        text = text.replace("?", "").strip()
        if not text:
            continue
        if len(text) > MAX_BULLET_CHARS:
            text = text[: MAX_BULLET_CHARS - 3].rstrip() + "…"
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        bullets.append(text)
        if len(bullets) >= limit:
            break
    return bullets


def normalize_actions(items: Any, limit: int = MAX_ACTIONS) -> List[Dict[str, str]]:
    if not isinstance(items, list):
        return []
    actions = []
    for item in items:
        if not isinstance(item, dict):
            continue
        action = {
            "title": str(item.get("title") or "").strip(),
            "how": str(item.get("how") or "").strip(),
            "why": str(item.get("why") or "").strip(),
        }
        if action["title"] and action["how"]:
            actions.append(action)
        if len(actions) >= limit:
            break
    return actions


def parse_feedback(
    raw: str,
    kind: JobKind,
    created_at: datetime,
    include_raw: bool = False,
) -> FeedbackResult:
    """
    Parse generation output into a FeedbackResult, repairing what it can.

    Raises:
        ValidationError: If the output is not a JSON object or has no usable
            bullets after repair
    """
    cleaned = strip_code_fences(raw)
    if not cleaned:
        raise ValidationError("Generation returned an empty response")

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Generation returned invalid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise ValidationError(
            f"Generation returned {type(parsed).__name__}, expected an object"
        )

    message_section = parsed.get("message") or parsed.get("telegram") or {}
    detail_section = parsed.get("detail") or {}
    if not isinstance(message_section, dict):
        message_section = {}
    if not isinstance(detail_section, dict):
        detail_section = {}

    message_bullets = normalize_bullets(
        message_section.get("bullets", parsed.get("bullets")), MESSAGE_MAX_BULLETS
    )
    detail_bullets = normalize_bullets(
        detail_section.get("bullets", parsed.get("bullets")), DETAIL_MAX_BULLETS
    )
    if not message_bullets:
        message_bullets = detail_bullets[:MESSAGE_MAX_BULLETS]
    if not detail_bullets:
        detail_bullets = list(message_bullets)
    if not message_bullets:
        raise ValidationError("Generation returned no usable bullets")

    title = str(detail_section.get("title") or "").strip() or DEFAULT_TITLES[kind]

    try:
        return FeedbackResult(
            kind=kind,
            created_at=created_at,
            message=FeedbackMessage(bullets=message_bullets),
            detail=FeedbackDetail(
                title=title,
                bullets=detail_bullets,
                actions=normalize_actions(detail_section.get("actions")),
            ),
            meta={"raw": raw} if include_raw else None,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"Generation output failed validation: {e}") from e
