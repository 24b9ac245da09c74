from __future__ import annotations

"""Challenge, goal, and day-entry records plus their wire/persisted dict shapes."""

from dataclasses import dataclass, field, replace
from typing import Any


GOAL_COLORS = ("coral", "sage", "gold", "slate", "sky", "plum")
CHALLENGE_STATUSES = ("active", "completed", "failed", "abandoned")
TERMINAL_STATUSES = frozenset({"completed", "failed", "abandoned"})
DURATION_PRESETS = (21, 30, 66, 75, 100)
DEFAULT_DURATION = 75
MAX_DURATION = 365
MIN_GOALS = 1
MAX_GOALS = 5
MAX_WIRE_GOALS = 10
MAX_NAME_CHARS = 100
MAX_NOTE_CHARS = 1000


@dataclass(frozen=True)
class Goal:
    id: str
    name: str
    color: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "color": self.color}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Goal":
        return cls(id=str(payload["id"]), name=str(payload["name"]), color=str(payload["color"]))


@dataclass(frozen=True)
class Sharing:
    """Visibility of a challenge to other identities."""

    visible_to_friends: bool = True
    share_goals: bool = True
    share_streak: bool = True
    share_daily_status: bool = True
    share_notes: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "visibleToFriends": self.visible_to_friends,
            "shareGoals": self.share_goals,
            "shareStreak": self.share_streak,
            "shareDailyStatus": self.share_daily_status,
            "shareNotes": self.share_notes,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Sharing":
        defaults = cls()
        return cls(
            visible_to_friends=bool(payload.get("visibleToFriends", defaults.visible_to_friends)),
            share_goals=bool(payload.get("shareGoals", defaults.share_goals)),
            share_streak=bool(payload.get("shareStreak", defaults.share_streak)),
            share_daily_status=bool(payload.get("shareDailyStatus", defaults.share_daily_status)),
            share_notes=bool(payload.get("shareNotes", defaults.share_notes)),
        )


@dataclass(frozen=True)
class Challenge:
    id: str
    name: str
    start_date: str
    duration: int
    strict_mode: bool
    goals: tuple[Goal, ...]
    updated_at: str
    status: str = "active"
    end_date: str | None = None
    failed_on_day: int | None = None
    sharing: Sharing = field(default_factory=Sharing)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def goal_ids(self) -> list[str]:
        return [goal.id for goal in self.goals]

    def with_changes(self, **changes: Any) -> "Challenge":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Wire (`SyncChallenge`) and persisted shape; optional fields are omitted when unset."""

        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "startDate": self.start_date,
            "duration": self.duration,
            "strictMode": self.strict_mode,
            "status": self.status,
        }
        if self.end_date is not None:
            payload["endDate"] = self.end_date
        if self.failed_on_day is not None:
            payload["failedOnDay"] = self.failed_on_day
        payload.update(self.sharing.to_dict())
        payload["goals"] = [goal.to_dict() for goal in self.goals]
        payload["updatedAt"] = self.updated_at
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Challenge":
        failed_on_day = payload.get("failedOnDay")
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            start_date=str(payload["startDate"]),
            duration=int(payload["duration"]),
            strict_mode=bool(payload["strictMode"]),
            goals=tuple(Goal.from_dict(item) for item in payload.get("goals", [])),
            updated_at=str(payload.get("updatedAt") or ""),
            status=str(payload.get("status", "active")),
            end_date=payload.get("endDate") or None,
            failed_on_day=int(failed_on_day) if failed_on_day else None,
            sharing=Sharing.from_dict(payload),
        )


@dataclass(frozen=True)
class DayEntry:
    date: str
    goal_id: str
    completed: bool
    updated_at: str
    note: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.date, self.goal_id)

    @property
    def sync_id(self) -> str:
        return f"{self.goal_id}-{self.date}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"date": self.date, "goalId": self.goal_id, "completed": self.completed}
        if self.note is not None:
            payload["note"] = self.note
        payload["updatedAt"] = self.updated_at
        return payload

    def to_sync_dict(self, challenge_id: str) -> dict[str, Any]:
        payload = {"id": self.sync_id, "challengeId": challenge_id}
        payload.update(self.to_dict())
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DayEntry":
        note = payload.get("note")
        return cls(
            date=str(payload["date"]),
            goal_id=str(payload["goalId"]),
            completed=bool(payload["completed"]),
            updated_at=str(payload.get("updatedAt") or ""),
            note=note if isinstance(note, str) else None,
        )


@dataclass
class Snapshot:
    """Whole-store export: the unit of atomic import."""

    current_challenge_id: str | None = None
    challenges: list[Challenge] = field(default_factory=list)
    entries: list[DayEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.challenges and not self.entries

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentChallengeId": self.current_challenge_id,
            "challenges": [challenge.to_dict() for challenge in self.challenges],
            "entries": [entry.to_dict() for entry in self.entries],
        }


def goal_owner_index(challenges: list[Challenge]) -> dict[str, str]:
    """Map every goal id to the id of the challenge that owns it."""

    index: dict[str, str] = {}
    for challenge in challenges:
        for goal in challenge.goals:
            index[goal.id] = challenge.id
    return index
