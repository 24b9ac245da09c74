from __future__ import annotations

"""Calendar-date helpers and the monotonic `updatedAt` issuer."""

from datetime import UTC, date, datetime, timedelta
from typing import Callable


EPOCH = "1970-01-01T00:00:00.000Z"


def today() -> date:
    """Local calendar date; challenge days follow the device's wall clock."""

    return date.today()


def parse_date(value: str | date) -> date:
    if isinstance(value, date):
        return value
    return datetime.strptime(value, "%Y-%m-%d").date()


def format_date(value: date) -> str:
    return value.isoformat()


def day_number(start_date: str | date, target: str | date) -> int:
    """1-indexed day of a challenge; day 1 is the start date."""

    return (parse_date(target) - parse_date(start_date)).days + 1


def challenge_dates(start_date: str | date, duration: int) -> list[str]:
    start = parse_date(start_date)
    return [format_date(start + timedelta(days=offset)) for offset in range(duration)]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    """Millisecond UTC ISO-8601 with `Z`, so string order matches time order."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def canonical_timestamp(value: str) -> str | None:
    """Rewrite any ISO-8601 instant into the comparable `format_timestamp` form.

    Returns None when the value does not parse. Sub-millisecond digits are
    truncated.
    """

    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return format_timestamp(parsed)


def utc_now_iso() -> str:
    return format_timestamp(utc_now())


class TimestampIssuer:
    """Issue strictly increasing `updatedAt` values.

    Values never repeat within a process and never fall at or below the
    highest watermark passed to `observe`, so a write made after a sync is
    selected by the next push even when the device clock lags the server.
    """

    def __init__(self, now: Callable[[], datetime] = utc_now) -> None:
        self._now = now
        self._floor = EPOCH

    def observe(self, value: str | None) -> None:
        if value and value > self._floor:
            self._floor = value

    def issue(self) -> str:
        candidate = format_timestamp(self._now())
        if candidate <= self._floor:
            floor_dt = parse_timestamp(self._floor) or utc_now()
            candidate = format_timestamp(floor_dt + timedelta(milliseconds=1))
        self._floor = candidate
        return candidate
