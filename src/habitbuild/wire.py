from __future__ import annotations

"""Structural checks for records crossing a replica boundary.

Full input validation belongs to the remote authority's request layer; these
schemas only guarantee that a record has the shape the merge and progression
code rely on.
"""

from datetime import datetime
from typing import Any

from jsonschema import Draft202012Validator

from .dates import canonical_timestamp
from .errors import ValidationError
from .models import (
    CHALLENGE_STATUSES,
    GOAL_COLORS,
    MAX_DURATION,
    MAX_NAME_CHARS,
    MAX_NOTE_CHARS,
    MAX_WIRE_GOALS,
    Challenge,
    DayEntry,
    Snapshot,
)


DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
TIMESTAMP_PATTERN = r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"

GOAL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "name", "color"],
    "properties": {
        "id": {"type": "string", "minLength": 1, "maxLength": 100},
        "name": {"type": "string", "minLength": 1, "maxLength": MAX_NAME_CHARS},
        "color": {"enum": list(GOAL_COLORS)},
    },
}

CHALLENGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "name", "startDate", "duration", "strictMode", "status", "goals", "updatedAt"],
    "properties": {
        "id": {"type": "string", "minLength": 1, "maxLength": 100},
        "name": {"type": "string", "minLength": 1, "maxLength": MAX_NAME_CHARS},
        "startDate": {"type": "string", "pattern": DATE_PATTERN},
        "duration": {"type": "integer", "minimum": 1, "maximum": MAX_DURATION},
        "strictMode": {"type": "boolean"},
        "status": {"enum": list(CHALLENGE_STATUSES)},
        "endDate": {"type": ["string", "null"], "pattern": DATE_PATTERN},
        "failedOnDay": {"type": ["integer", "null"], "minimum": 1, "maximum": MAX_DURATION},
        "visibleToFriends": {"type": "boolean"},
        "shareGoals": {"type": "boolean"},
        "shareStreak": {"type": "boolean"},
        "shareDailyStatus": {"type": "boolean"},
        "shareNotes": {"type": "boolean"},
        "goals": {"type": "array", "minItems": 1, "maxItems": MAX_WIRE_GOALS, "items": GOAL_SCHEMA},
        "updatedAt": {"type": "string", "pattern": TIMESTAMP_PATTERN},
    },
}

ENTRY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["goalId", "date", "completed", "updatedAt"],
    "properties": {
        "id": {"type": "string", "minLength": 1, "maxLength": 200},
        "challengeId": {"type": "string", "minLength": 1, "maxLength": 100},
        "goalId": {"type": "string", "minLength": 1, "maxLength": 100},
        "date": {"type": "string", "pattern": DATE_PATTERN},
        "completed": {"type": "boolean"},
        "note": {"type": ["string", "null"], "maxLength": MAX_NOTE_CHARS},
        "updatedAt": {"type": "string", "pattern": TIMESTAMP_PATTERN},
    },
}

SYNC_ENTRY_SCHEMA: dict[str, Any] = {**ENTRY_SCHEMA, "required": [*ENTRY_SCHEMA["required"], "challengeId"]}

SNAPSHOT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["challenges", "entries"],
    "properties": {
        "currentChallengeId": {"type": ["string", "null"]},
        "challenges": {"type": "array"},
        "entries": {"type": "array"},
    },
}

_CHALLENGE_VALIDATOR = Draft202012Validator(CHALLENGE_SCHEMA)
_ENTRY_VALIDATOR = Draft202012Validator(ENTRY_SCHEMA)
_SYNC_ENTRY_VALIDATOR = Draft202012Validator(SYNC_ENTRY_SCHEMA)
_SNAPSHOT_VALIDATOR = Draft202012Validator(SNAPSHOT_SCHEMA)


def _check(validator: Draft202012Validator, payload: Any, label: str) -> None:
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        record_id = payload.get("id") if isinstance(payload, dict) else None
        raise ValidationError(
            f"{label} failed validation at {where}: {first.message}",
            record_id=record_id if isinstance(record_id, str) else None,
        )


def _check_calendar_date(value: Any, label: str) -> None:
    if value is None:
        return
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise ValidationError(f"{label} is not a calendar date: {value}") from exc


def _with_canonical_updated_at(payload: dict[str, Any], label: str) -> dict[str, Any]:
    # Merge compares updatedAt as strings, so every stored value must share one format.
    canonical = canonical_timestamp(payload["updatedAt"])
    if canonical is None:
        record_id = payload.get("id")
        raise ValidationError(
            f"{label}.updatedAt is not a valid timestamp: {payload['updatedAt']}",
            record_id=record_id if isinstance(record_id, str) else None,
        )
    if canonical == payload["updatedAt"]:
        return payload
    return {**payload, "updatedAt": canonical}


def challenge_from_wire(payload: Any) -> Challenge:
    """Validate one `SyncChallenge` (or persisted challenge) and build the record.

    `updatedAt` may arrive with any UTC offset or precision; the record always
    carries the millisecond `Z` form.
    """

    _check(_CHALLENGE_VALIDATOR, payload, "challenge")
    _check_calendar_date(payload["startDate"], "challenge.startDate")
    _check_calendar_date(payload.get("endDate"), "challenge.endDate")
    goal_ids = [goal["id"] for goal in payload["goals"]]
    if len(set(goal_ids)) != len(goal_ids):
        raise ValidationError("challenge.goals contains duplicate goal ids", record_id=payload["id"])
    return Challenge.from_dict(_with_canonical_updated_at(payload, "challenge"))


def entry_from_wire(payload: Any, *, require_challenge: bool = True) -> tuple[str | None, DayEntry]:
    """Validate one entry and return `(challengeId, entry)`."""

    validator = _SYNC_ENTRY_VALIDATOR if require_challenge else _ENTRY_VALIDATOR
    _check(validator, payload, "entry")
    _check_calendar_date(payload["date"], "entry.date")
    return payload.get("challengeId"), DayEntry.from_dict(_with_canonical_updated_at(payload, "entry"))


def snapshot_from_dict(payload: Any) -> Snapshot:
    """Validate a full export document; any invalid record rejects the whole snapshot.

    A document naming the same challenge id or the same (date, goalId) entry
    twice is rejected rather than resolved, so every storage backend imports
    exactly the same records.
    """

    _check(_SNAPSHOT_VALIDATOR, payload, "snapshot")
    challenges = [challenge_from_wire(item) for item in payload["challenges"]]
    entries = [entry_from_wire(item, require_challenge=False)[1] for item in payload["entries"]]
    seen_challenges: set[str] = set()
    for challenge in challenges:
        if challenge.id in seen_challenges:
            raise ValidationError(f"snapshot contains challenge {challenge.id} more than once", record_id=challenge.id)
        seen_challenges.add(challenge.id)
    owned_goals = {goal.id for challenge in challenges for goal in challenge.goals}
    seen_entries: set[tuple[str, str]] = set()
    for entry in entries:
        if entry.goal_id not in owned_goals:
            raise ValidationError(f"snapshot entry {entry.sync_id} references an unknown goal")
        if entry.key in seen_entries:
            raise ValidationError(f"snapshot contains entry {entry.sync_id} more than once", record_id=entry.sync_id)
        seen_entries.add(entry.key)
    current_id = payload.get("currentChallengeId") or None
    if current_id is not None and current_id not in seen_challenges:
        raise ValidationError(f"snapshot currentChallengeId {current_id} does not match any challenge")
    return Snapshot(current_challenge_id=current_id, challenges=challenges, entries=entries)
