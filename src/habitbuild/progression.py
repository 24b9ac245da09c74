from __future__ import annotations

"""Progress derived from a challenge and its day entries.

Everything here is a pure function of `(challenge, entries, today)`: no I/O,
no clocks read unless `today` is omitted. Output is therefore identical before
and after a sync that leaves the merged log unchanged.

Missed-day policy: a past day counts as missed only when *no* goal was
completed on it. A partially completed day is neither complete nor missed,
so strict mode fails a challenge for skipped days, not for partial ones.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from . import dates
from .errors import InvalidTransitionError
from .models import TERMINAL_STATUSES, Challenge, DayEntry, Goal


@dataclass(frozen=True)
class DayStatus:
    date: str
    day_number: int
    is_today: bool
    is_past: bool
    is_future: bool
    completed_goals: int
    total_goals: int
    is_complete: bool
    is_missed: bool


@dataclass(frozen=True)
class ChallengeStats:
    current_streak: int
    best_streak: int
    total_days_completed: int
    total_days: int
    completion_rate: int
    current_day: int
    days_remaining: int


@dataclass(frozen=True)
class Transition:
    """A terminal status the engine says a challenge should move to."""

    status: str
    failed_on_day: int | None = None


def _today(value: date | str | None) -> str:
    return dates.format_date(dates.today() if value is None else dates.parse_date(value))


def day_number(start_date: str | date, target: str | date) -> int:
    return dates.day_number(start_date, target)


def _completed_goal_ids(day: str, entries: Iterable[DayEntry]) -> set[str]:
    return {entry.goal_id for entry in entries if entry.date == day and entry.completed}


def is_day_complete(day: str, goals: Iterable[Goal], entries: Iterable[DayEntry]) -> bool:
    """True when every goal has a completed entry on `day`."""

    done = _completed_goal_ids(day, entries)
    return all(goal.id in done for goal in goals)


def is_day_missed(
    day: str,
    goals: Iterable[Goal],
    entries: Iterable[DayEntry],
    start_date: str,
    *,
    today: date | str | None = None,
) -> bool:
    """True for a past, in-range day on which none of the goals was completed."""

    if day >= _today(today) or day < start_date:
        return False
    goal_ids = {goal.id for goal in goals}
    return not (_completed_goal_ids(day, entries) & goal_ids)


def compute_day_statuses(
    challenge: Challenge,
    entries: Iterable[DayEntry],
    *,
    today: date | str | None = None,
) -> list[DayStatus]:
    """One status per challenge day, in chronological order."""

    current = _today(today)
    goal_ids = set(challenge.goal_ids)
    total_goals = len(goal_ids)

    completed_by_date: dict[str, set[str]] = {}
    for entry in entries:
        if entry.completed and entry.goal_id in goal_ids:
            completed_by_date.setdefault(entry.date, set()).add(entry.goal_id)

    statuses: list[DayStatus] = []
    for index, day in enumerate(dates.challenge_dates(challenge.start_date, challenge.duration)):
        completed = len(completed_by_date.get(day, ()))
        is_past = day < current
        statuses.append(
            DayStatus(
                date=day,
                day_number=index + 1,
                is_today=day == current,
                is_past=is_past,
                is_future=day > current,
                completed_goals=completed,
                total_goals=total_goals,
                is_complete=completed == total_goals,
                is_missed=is_past and completed == 0,
            )
        )
    return statuses


def current_streak(statuses: list[DayStatus]) -> int:
    """Complete days ending today, or yesterday while today is still open."""

    start = next((index for index, status in enumerate(statuses) if status.is_today), -1)
    if start >= 0 and not statuses[start].is_complete:
        start -= 1
    streak = 0
    for index in range(start, -1, -1):
        if not statuses[index].is_complete:
            break
        streak += 1
    return streak


def best_streak(statuses: list[DayStatus]) -> int:
    best = 0
    run = 0
    for status in statuses:
        if status.is_future:
            break
        if status.is_complete:
            run += 1
            best = max(best, run)
        else:
            run = 0
    return best


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def challenge_stats(
    challenge: Challenge,
    entries: Iterable[DayEntry] | None = None,
    *,
    statuses: list[DayStatus] | None = None,
    today: date | str | None = None,
) -> ChallengeStats:
    if statuses is None:
        statuses = compute_day_statuses(challenge, entries or [], today=today)
    current_day = day_number(challenge.start_date, _today(today))
    completed_days = sum(1 for status in statuses if (status.is_past or status.is_today) and status.is_complete)
    active_days = min(current_day, challenge.duration)
    completion_rate = _round_half_up(Decimal(100 * completed_days) / active_days) if active_days > 0 else 0
    return ChallengeStats(
        current_streak=current_streak(statuses),
        best_streak=best_streak(statuses),
        total_days_completed=completed_days,
        total_days=challenge.duration,
        completion_rate=completion_rate,
        current_day=max(0, min(current_day, challenge.duration)),
        days_remaining=min(challenge.duration, max(0, challenge.duration - current_day)),
    )


def check_strict_mode_violation(challenge: Challenge, statuses: list[DayStatus]) -> int | None:
    """Day number of the first missed day of an active strict challenge."""

    if not challenge.strict_mode or not challenge.is_active:
        return None
    missed = next((status for status in statuses if status.is_missed), None)
    return missed.day_number if missed else None


def check_completion(challenge: Challenge, stats: ChallengeStats) -> bool:
    if not challenge.is_active:
        return False
    return stats.current_day >= challenge.duration and stats.total_days_completed == challenge.duration


def evaluate(
    challenge: Challenge,
    entries: Iterable[DayEntry],
    *,
    today: date | str | None = None,
) -> Transition | None:
    """Derived transition for an active challenge; strict failure wins over completion."""

    statuses = compute_day_statuses(challenge, entries, today=today)
    failed_on_day = check_strict_mode_violation(challenge, statuses)
    if failed_on_day is not None:
        return Transition(status="failed", failed_on_day=failed_on_day)
    if check_completion(challenge, challenge_stats(challenge, statuses=statuses, today=today)):
        return Transition(status="completed")
    return None


def apply_transition(
    challenge: Challenge,
    status: str,
    *,
    updated_at: str,
    end_date: str | date | None = None,
    failed_on_day: int | None = None,
) -> Challenge:
    """Move an active challenge to a terminal status, stamping its end date."""

    if status not in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Unknown terminal status: {status}", challenge_id=challenge.id)
    if not challenge.is_active:
        raise InvalidTransitionError(
            f"Challenge is already {challenge.status}; terminal states have no transitions",
            challenge_id=challenge.id,
        )
    if status == "failed" and failed_on_day is None:
        raise InvalidTransitionError("A failed challenge needs failed_on_day", challenge_id=challenge.id)
    return challenge.with_changes(
        status=status,
        end_date=_today(end_date),
        failed_on_day=failed_on_day if status == "failed" else challenge.failed_on_day,
        updated_at=updated_at,
    )


def today_goals_status(
    challenge: Challenge,
    entries: Iterable[DayEntry],
    *,
    today: date | str | None = None,
) -> list[dict[str, object]]:
    current = _today(today)
    by_goal = {entry.goal_id: entry for entry in entries if entry.date == current}
    rows: list[dict[str, object]] = []
    for goal in challenge.goals:
        entry = by_goal.get(goal.id)
        rows.append(
            {
                "goal": goal,
                "completed": entry.completed if entry else False,
                "note": entry.note if entry else None,
            }
        )
    return rows
