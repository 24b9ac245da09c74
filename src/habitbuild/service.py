from __future__ import annotations

"""Host-facing service: challenge and entry edits, progress views, sync and recovery."""

import asyncio
import json
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from . import dates, progression
from .auth import Account, AccountStore
from .cache import Cache
from .config import Config, load_config
from .dates import TimestampIssuer
from .errors import AuthError, InvalidTransitionError, ValidationError
from .models import (
    GOAL_COLORS,
    MAX_DURATION,
    MAX_GOALS,
    MAX_NAME_CHARS,
    MAX_NOTE_CHARS,
    MIN_GOALS,
    Challenge,
    DayEntry,
    Goal,
    Sharing,
)
from .paths import ensure_home_dirs, habitbuild_home
from .recovery import RecoveryResult, recover_from_remote
from .remote import HttpRemoteReplica, RemoteReplica
from .sqlite_store import SQLiteStore
from .store import JsonFileStore, ReplicaStore
from .sync import SyncResult, reconcile
from .telemetry import TelemetryLogger
from .wire import snapshot_from_dict


CACHE_NAMESPACES = ("currentChallenge", "challenges", "entries")


def _new_id() -> str:
    return str(uuid.uuid4())


def _clean_name(value: str, label: str) -> str:
    text = (value or "").strip()
    if not text or len(text) > MAX_NAME_CHARS:
        raise ValidationError(f"{label} must be 1-{MAX_NAME_CHARS} characters", code="INVALID_INPUT")
    return text


def _check_color(color: str) -> str:
    if color not in GOAL_COLORS:
        raise ValidationError(f"Unknown goal color: {color}; expected one of {', '.join(GOAL_COLORS)}", code="INVALID_INPUT")
    return color


def _check_note(note: str | None) -> str | None:
    if note is not None and len(note) > MAX_NOTE_CHARS:
        raise ValidationError(f"Note must be at most {MAX_NOTE_CHARS} characters", code="INVALID_INPUT")
    return note


@dataclass
class HabitService:
    """One local replica plus its account, cache and event log.

    Every mutation and every sync or recovery run holds the same lock, so a
    check-in issued while a sync is in flight waits until the sync is done.
    """

    config: Config
    store: ReplicaStore
    accounts: AccountStore
    telemetry: TelemetryLogger
    cache: Cache
    remote_factory: Callable[[Account], RemoteReplica]
    clock: Callable[[], datetime] = dates.utc_now
    today_provider: Callable[[], date] = dates.today
    id_factory: Callable[[], str] = _new_id
    source: str = "service"
    issuer: TimestampIssuer = field(init=False)
    _lock: asyncio.Lock | None = field(default=None, init=False, repr=False)
    _lock_loop: asyncio.AbstractEventLoop | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.issuer = TimestampIssuer(now=self.clock)
        account = self.accounts.load()
        if account is not None:
            self.issuer.observe(account.last_sync_at)

    @classmethod
    def create(cls, config: Config | None = None, *, source: str = "cli") -> "HabitService":
        """Build the service for the configured home directory and storage backend."""

        if config is None:
            home = habitbuild_home()
            ensure_home_dirs(home)
            config = load_config(home)
        else:
            ensure_home_dirs(config.home)
        store: ReplicaStore
        if config.storage_backend == "sqlite":
            store = SQLiteStore(config.store_path)
        else:
            store = JsonFileStore(config.store_path)

        def remote_factory(account: Account) -> RemoteReplica:
            return HttpRemoteReplica(config.api_base_url, account.auth_token, timeout=config.request_timeout_seconds)

        return cls(
            config=config,
            store=store,
            accounts=AccountStore(config.account_path),
            telemetry=TelemetryLogger(config.events_path),
            cache=Cache(ttl_seconds=config.cache_ttl_seconds),
            remote_factory=remote_factory,
            source=source,
        )

    def _guard(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _stamp(self, *previous: str | None) -> str:
        for value in previous:
            self.issuer.observe(value)
        return self.issuer.issue()

    def _today(self) -> str:
        return dates.format_date(self.today_provider())

    def _invalidate(self) -> None:
        for namespace in CACHE_NAMESPACES:
            self.cache.invalidate(namespace)

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        self.telemetry.log_event(event_type, source=self.source, data=data)

    async def _require_challenge(self, challenge_id: str) -> Challenge:
        challenge = await self.store.get_challenge(challenge_id)
        if challenge is None:
            raise KeyError(f"Unknown challenge: {challenge_id}")
        return challenge

    async def _owner_of(self, goal_id: str) -> Challenge:
        for challenge in await self.store.list_challenges():
            if goal_id in challenge.goal_ids:
                return challenge
        raise ValidationError(f"Goal {goal_id} does not belong to any challenge", code="UNKNOWN_GOAL")

    # Challenges

    async def create_challenge(
        self,
        name: str,
        goals: Iterable[tuple[str, str]],
        *,
        duration: int = 75,
        strict_mode: bool = False,
        start_date: str | date | None = None,
        sharing: Sharing | None = None,
    ) -> Challenge:
        """Create an active challenge from `(goal name, color)` pairs and make it current."""

        goal_rows = [(_clean_name(goal_name, "Goal name"), _check_color(color)) for goal_name, color in goals]
        if not MIN_GOALS <= len(goal_rows) <= MAX_GOALS:
            raise ValidationError(f"A challenge needs {MIN_GOALS}-{MAX_GOALS} goals", code="INVALID_INPUT")
        if not 1 <= int(duration) <= MAX_DURATION:
            raise ValidationError(f"Duration must be 1-{MAX_DURATION} days", code="INVALID_INPUT")
        start = dates.format_date(dates.parse_date(start_date)) if start_date else self._today()

        async with self._guard():
            current_id = await self.store.get_current_challenge_id()
            if current_id is not None:
                current = await self.store.get_challenge(current_id)
                if current is not None and current.is_active:
                    raise InvalidTransitionError(
                        "An active challenge is already in progress",
                        hint="Abandon or finish it before starting another.",
                        challenge_id=current_id,
                    )
            challenge = Challenge(
                id=self.id_factory(),
                name=_clean_name(name, "Challenge name"),
                start_date=start,
                duration=int(duration),
                strict_mode=bool(strict_mode),
                goals=tuple(Goal(id=self.id_factory(), name=goal_name, color=color) for goal_name, color in goal_rows),
                updated_at=self._stamp(),
                sharing=sharing or Sharing(),
            )
            await self.store.put_challenge(challenge)
            await self.store.set_current_challenge_id(challenge.id)
            self._invalidate()
        self._emit("challenge.created", {"challenge_id": challenge.id, "goals": len(challenge.goals), "duration": challenge.duration})
        return challenge

    async def update_challenge(
        self,
        challenge_id: str,
        *,
        name: str | None = None,
        strict_mode: bool | None = None,
        sharing: Sharing | None = None,
    ) -> Challenge:
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = _clean_name(name, "Challenge name")
        if strict_mode is not None:
            changes["strict_mode"] = bool(strict_mode)
        if sharing is not None:
            changes["sharing"] = sharing
        async with self._guard():
            challenge = await self._require_challenge(challenge_id)
            updated = challenge.with_changes(**changes, updated_at=self._stamp(challenge.updated_at))
            await self.store.put_challenge(updated)
            self._invalidate()
        self._emit("challenge.updated", {"challenge_id": challenge_id, "fields": sorted(changes)})
        return updated

    async def add_goal(self, challenge_id: str, name: str, color: str) -> Challenge:
        goal = Goal(id=self.id_factory(), name=_clean_name(name, "Goal name"), color=_check_color(color))
        async with self._guard():
            challenge = await self._require_challenge(challenge_id)
            if not challenge.is_active:
                raise InvalidTransitionError(f"Challenge is {challenge.status}", challenge_id=challenge_id)
            if len(challenge.goals) >= MAX_GOALS:
                raise ValidationError(f"A challenge has at most {MAX_GOALS} goals", code="INVALID_INPUT")
            updated = challenge.with_changes(goals=(*challenge.goals, goal), updated_at=self._stamp(challenge.updated_at))
            await self.store.put_challenge(updated)
            self._invalidate()
        self._emit("challenge.updated", {"challenge_id": challenge_id, "fields": ["goals"]})
        return updated

    async def remove_goal(self, challenge_id: str, goal_id: str) -> Challenge:
        """Drop a goal; its day entries are deleted in the same store write."""

        async with self._guard():
            challenge = await self._require_challenge(challenge_id)
            if goal_id not in challenge.goal_ids:
                raise KeyError(f"Unknown goal: {goal_id}")
            if len(challenge.goals) <= MIN_GOALS:
                raise ValidationError(f"A challenge needs at least {MIN_GOALS} goal", code="INVALID_INPUT")
            updated = challenge.with_changes(
                goals=tuple(goal for goal in challenge.goals if goal.id != goal_id),
                updated_at=self._stamp(challenge.updated_at),
            )
            await self.store.put_challenge(updated)
            self._invalidate()
        self._emit("challenge.updated", {"challenge_id": challenge_id, "fields": ["goals"], "removed_goal": goal_id})
        return updated

    async def _end(self, challenge: Challenge, status: str, failed_on_day: int | None = None) -> Challenge:
        ended = progression.apply_transition(
            challenge,
            status,
            updated_at=self._stamp(challenge.updated_at),
            end_date=self._today(),
            failed_on_day=failed_on_day,
        )
        await self.store.put_challenge(ended)
        if await self.store.get_current_challenge_id() == challenge.id:
            await self.store.set_current_challenge_id(None)
        self._invalidate()
        self._emit("challenge.ended", {"challenge_id": challenge.id, "status": status, "failed_on_day": failed_on_day})
        return ended

    async def abandon_challenge(self, challenge_id: str) -> Challenge:
        async with self._guard():
            return await self._end(await self._require_challenge(challenge_id), "abandoned")

    async def get_current_challenge(self) -> Challenge | None:
        async def load() -> Challenge | None:
            current_id = await self.store.get_current_challenge_id()
            return await self.store.get_challenge(current_id) if current_id else None

        return await self.cache.get_or_load("currentChallenge", None, load)

    async def past_challenges(self) -> list[Challenge]:
        async def load() -> list[Challenge]:
            return [challenge for challenge in await self.store.list_challenges() if not challenge.is_active]

        return await self.cache.get_or_load("challenges", "past", load)

    # Entries

    def _entry_day(self, on: str | date) -> str:
        day = dates.format_date(dates.parse_date(on))
        if day > self._today():
            raise ValidationError(f"Cannot record {day}: it is in the future", code="INVALID_INPUT")
        return day

    async def _write_entry(self, day: str, goal_id: str, completed: bool, note: str | None, existing: DayEntry | None) -> DayEntry:
        await self._owner_of(goal_id)
        entry = DayEntry(
            date=day,
            goal_id=goal_id,
            completed=bool(completed),
            note=_check_note(note),
            updated_at=self._stamp(existing.updated_at if existing else None),
        )
        await self.store.put_entry(entry)
        self._invalidate()
        self._emit("entry.updated", {"goal_id": goal_id, "date": day, "completed": entry.completed})
        return entry

    async def set_entry(self, on: str | date, goal_id: str, completed: bool, note: str | None = None) -> DayEntry:
        day = self._entry_day(on)
        async with self._guard():
            existing = await self.store.get_entry(day, goal_id)
            return await self._write_entry(day, goal_id, completed, note, existing)

    async def toggle_entry(self, on: str | date, goal_id: str) -> DayEntry:
        """Flip completion for one goal and day, keeping any note."""

        day = self._entry_day(on)
        async with self._guard():
            existing = await self.store.get_entry(day, goal_id)
            completed = not existing.completed if existing else True
            return await self._write_entry(day, goal_id, completed, existing.note if existing else None, existing)

    async def update_entry_note(self, on: str | date, goal_id: str, note: str) -> DayEntry | None:
        day = self._entry_day(on)
        async with self._guard():
            existing = await self.store.get_entry(day, goal_id)
            if existing is None:
                return None
            return await self._write_entry(day, goal_id, existing.completed, note, existing)

    async def challenge_entries(self, challenge_id: str) -> list[DayEntry]:
        async def load() -> list[DayEntry]:
            challenge = await self.store.get_challenge(challenge_id)
            if challenge is None:
                return []
            return await self.store.list_entries_by_goal_ids(challenge.goal_ids)

        return await self.cache.get_or_load("entries", challenge_id, load)

    # Progress

    async def _resolve(self, challenge_id: str | None) -> Challenge | None:
        if challenge_id is not None:
            return await self._require_challenge(challenge_id)
        return await self.get_current_challenge()

    async def day_statuses(self, challenge_id: str | None = None) -> list[progression.DayStatus]:
        challenge = await self._resolve(challenge_id)
        if challenge is None:
            return []
        entries = await self.challenge_entries(challenge.id)
        return progression.compute_day_statuses(challenge, entries, today=self._today())

    async def stats(self, challenge_id: str | None = None) -> progression.ChallengeStats | None:
        challenge = await self._resolve(challenge_id)
        if challenge is None:
            return None
        entries = await self.challenge_entries(challenge.id)
        return progression.challenge_stats(challenge, entries, today=self._today())

    async def today_goals_status(self) -> list[dict[str, Any]]:
        challenge = await self.get_current_challenge()
        if challenge is None:
            return []
        entries = await self.challenge_entries(challenge.id)
        return progression.today_goals_status(challenge, entries, today=self._today())

    async def refresh_progress(self) -> Challenge | None:
        """Apply a strict-mode failure or completion to the current challenge, if due."""

        async with self._guard():
            current_id = await self.store.get_current_challenge_id()
            challenge = await self.store.get_challenge(current_id) if current_id else None
            if challenge is None or not challenge.is_active:
                return None
            entries = await self.store.list_entries_by_goal_ids(challenge.goal_ids)
            transition = progression.evaluate(challenge, entries, today=self._today())
            if transition is None:
                return None
            return await self._end(challenge, transition.status, transition.failed_on_day)

    # Data

    async def export_data(self) -> dict[str, Any]:
        return (await self.store.export_all()).to_dict()

    async def import_data(self, payload: str | dict[str, Any]) -> None:
        """Replace all local data with an export document; invalid input changes nothing."""

        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise ValidationError("Import is not valid JSON", code="INVALID_IMPORT") from exc
        snapshot = snapshot_from_dict(payload)
        if snapshot.current_challenge_id is not None:
            current = next(item for item in snapshot.challenges if item.id == snapshot.current_challenge_id)
            if not current.is_active:
                snapshot.current_challenge_id = None
        async with self._guard():
            await self.store.import_all(snapshot)
            for record in (*snapshot.challenges, *snapshot.entries):
                self.issuer.observe(record.updated_at)
            self._invalidate()
        self._emit("data.imported", {"challenges": len(snapshot.challenges), "entries": len(snapshot.entries)})

    async def clear_all_data(self) -> None:
        async with self._guard():
            await self.store.clear_all()
            self._invalidate()
        self._emit("data.cleared", {})

    # Sync

    def should_sync(self, now: datetime | None = None) -> bool:
        """True when logged in and never synced or the last sync is older than the interval."""

        account = self.accounts.load()
        if account is None:
            return False
        last = dates.parse_timestamp(account.last_sync_at or "")
        if last is None:
            return True
        elapsed = ((now or self.clock()) - last).total_seconds()
        return elapsed > self.config.sync_min_interval_seconds

    async def sync(self) -> SyncResult:
        async with self._guard():
            # Read under the lock so a queued sync starts from the watermark the running one stores.
            try:
                account = self.accounts.require_account()
            except AuthError as exc:
                self._emit("sync.skipped", {"reason": "not_logged_in"})
                return SyncResult(success=False, skipped=True, error=exc.message, code=exc.code)

            result = await reconcile(
                self.store,
                self.remote_factory(account),
                account.last_sync_at,
                timeout=self.config.request_timeout_seconds,
                telemetry=self.telemetry,
                source=self.source,
            )
            if result.new_watermark and result.new_watermark != account.last_sync_at:
                self.accounts.update_last_sync_at(result.new_watermark)
                self.issuer.observe(result.new_watermark)
            self._invalidate()
        return result

    async def sync_on_open(self) -> SyncResult | None:
        if not self.should_sync():
            return None
        return await self.sync()

    async def recover_if_empty(self) -> RecoveryResult:
        async with self._guard():
            try:
                account = self.accounts.require_account()
            except AuthError as exc:
                self._emit("recovery.skipped", {"reason": "not_logged_in"})
                return RecoveryResult(recovered=False, reason="not_logged_in", code=exc.code)

            result = await recover_from_remote(
                self.store,
                self.remote_factory(account),
                timeout=self.config.request_timeout_seconds,
                telemetry=self.telemetry,
                source=self.source,
            )
            if result.recovered and result.new_watermark:
                self.accounts.update_last_sync_at(result.new_watermark)
                self.issuer.observe(result.new_watermark)
                self._invalidate()
        return result
