from __future__ import annotations

"""Replica Store contract and the in-memory / JSON-file adapters.

A replica holds challenges keyed by id, entries keyed by `(date, goalId)`, and
one current-challenge setting. Stores carry no business rules beyond
referential integrity: dropping a goal or a challenge cascades to its entries.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from json import JSONDecodeError
from pathlib import Path
from typing import Any

from .errors import StorageError
from .models import Challenge, DayEntry, Snapshot
from .paths import load_json, save_json


STORE_FORMAT_VERSION = 1


class ReplicaStore(ABC):
    """Async CRUD surface shared by local adapters and the remote authority's storage."""

    @abstractmethod
    async def get_current_challenge_id(self) -> str | None: ...

    @abstractmethod
    async def set_current_challenge_id(self, challenge_id: str | None) -> None: ...

    @abstractmethod
    async def get_challenge(self, challenge_id: str) -> Challenge | None: ...

    @abstractmethod
    async def put_challenge(self, challenge: Challenge) -> None:
        """Upsert; entries of goals missing from the new version are deleted with it."""

    @abstractmethod
    async def delete_challenge(self, challenge_id: str) -> None: ...

    @abstractmethod
    async def list_challenges(self) -> list[Challenge]: ...

    @abstractmethod
    async def get_entry(self, date: str, goal_id: str) -> DayEntry | None: ...

    @abstractmethod
    async def put_entry(self, entry: DayEntry) -> None: ...

    @abstractmethod
    async def list_entries(self) -> list[DayEntry]: ...

    @abstractmethod
    async def list_entries_by_goal_ids(self, goal_ids: Iterable[str]) -> list[DayEntry]: ...

    @abstractmethod
    async def list_entries_by_date(self, date: str) -> list[DayEntry]: ...

    @abstractmethod
    async def delete_entries_by_goal_ids(self, goal_ids: Iterable[str]) -> None: ...

    @abstractmethod
    async def export_all(self) -> Snapshot: ...

    @abstractmethod
    async def import_all(self, snapshot: Snapshot) -> None:
        """Replace the whole state with `snapshot`, or leave it untouched on failure."""

    @abstractmethod
    async def clear_all(self) -> None: ...

    async def is_empty(self) -> bool:
        return not await self.list_challenges()


class MemoryStore(ReplicaStore):
    """Dict-backed replica; every mutation runs inside a rollback-on-error transaction."""

    def __init__(self) -> None:
        self._current_id: str | None = None
        self._challenges: dict[str, Challenge] = {}
        self._entries: dict[tuple[str, str], DayEntry] = {}
        self._by_goal: dict[str, set[tuple[str, str]]] = {}

    def _persist(self) -> None:
        """Durability hook; called once per committed mutation."""

    def _rebuild_index(self) -> None:
        self._by_goal = {}
        for key in self._entries:
            self._by_goal.setdefault(key[1], set()).add(key)

    def _drop_entries_for_goals(self, goal_ids: Iterable[str]) -> None:
        for goal_id in goal_ids:
            for key in self._by_goal.pop(goal_id, set()):
                self._entries.pop(key, None)

    def _load(self, snapshot: Snapshot) -> None:
        self._current_id = snapshot.current_challenge_id
        self._challenges = {challenge.id: challenge for challenge in snapshot.challenges}
        self._entries = {entry.key: entry for entry in snapshot.entries}
        self._rebuild_index()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        saved = (self._current_id, dict(self._challenges), dict(self._entries))
        try:
            yield
            self._persist()
        except Exception:
            self._current_id, self._challenges, self._entries = saved
            self._rebuild_index()
            raise

    def _snapshot(self) -> Snapshot:
        return Snapshot(
            current_challenge_id=self._current_id,
            challenges=list(self._challenges.values()),
            entries=[self._entries[key] for key in sorted(self._entries)],
        )

    async def get_current_challenge_id(self) -> str | None:
        return self._current_id

    async def set_current_challenge_id(self, challenge_id: str | None) -> None:
        with self._transaction():
            self._current_id = challenge_id

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        return self._challenges.get(challenge_id)

    async def put_challenge(self, challenge: Challenge) -> None:
        with self._transaction():
            existing = self._challenges.get(challenge.id)
            if existing is not None:
                self._drop_entries_for_goals(set(existing.goal_ids) - set(challenge.goal_ids))
            self._challenges[challenge.id] = challenge

    async def delete_challenge(self, challenge_id: str) -> None:
        with self._transaction():
            existing = self._challenges.pop(challenge_id, None)
            if existing is not None:
                self._drop_entries_for_goals(existing.goal_ids)
            if self._current_id == challenge_id:
                self._current_id = None

    async def list_challenges(self) -> list[Challenge]:
        return list(self._challenges.values())

    async def get_entry(self, date: str, goal_id: str) -> DayEntry | None:
        return self._entries.get((date, goal_id))

    async def put_entry(self, entry: DayEntry) -> None:
        with self._transaction():
            self._entries[entry.key] = entry
            self._by_goal.setdefault(entry.goal_id, set()).add(entry.key)

    async def list_entries(self) -> list[DayEntry]:
        return [self._entries[key] for key in sorted(self._entries)]

    async def list_entries_by_goal_ids(self, goal_ids: Iterable[str]) -> list[DayEntry]:
        keys: set[tuple[str, str]] = set()
        for goal_id in set(goal_ids):
            keys.update(self._by_goal.get(goal_id, ()))
        return [self._entries[key] for key in sorted(keys)]

    async def list_entries_by_date(self, date: str) -> list[DayEntry]:
        return [entry for key, entry in sorted(self._entries.items()) if key[0] == date]

    async def delete_entries_by_goal_ids(self, goal_ids: Iterable[str]) -> None:
        with self._transaction():
            self._drop_entries_for_goals(set(goal_ids))

    async def export_all(self) -> Snapshot:
        return self._snapshot()

    async def import_all(self, snapshot: Snapshot) -> None:
        ensure_unique_records(snapshot)
        with self._transaction():
            self._load(snapshot)

    async def clear_all(self) -> None:
        with self._transaction():
            self._load(Snapshot())


class JsonFileStore(MemoryStore):
    """Key-value replica persisted as one JSON document replaced atomically per write."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        try:
            document = load_json(path, None)
        except (OSError, JSONDecodeError) as exc:
            raise StorageError(f"Could not read local store: {path}", path=str(path)) from exc
        if document is not None:
            self._load(_snapshot_from_document(document, path))

    def _persist(self) -> None:
        document = {
            "version": STORE_FORMAT_VERSION,
            "currentChallengeId": self._current_id,
            "challenges": {challenge_id: challenge.to_dict() for challenge_id, challenge in self._challenges.items()},
            "entries": {f"{date}:{goal_id}": entry.to_dict() for (date, goal_id), entry in sorted(self._entries.items())},
        }
        try:
            save_json(self.path, document)
        except OSError as exc:
            raise StorageError(f"Could not write local store: {self.path}", path=str(self.path)) from exc


def _snapshot_from_document(document: Any, path: Path) -> Snapshot:
    if not isinstance(document, dict):
        raise StorageError(f"Local store must be a JSON object: {path}", path=str(path))
    try:
        return Snapshot(
            current_challenge_id=document.get("currentChallengeId") or None,
            challenges=[Challenge.from_dict(item) for item in document.get("challenges", {}).values()],
            entries=[DayEntry.from_dict(item) for item in document.get("entries", {}).values()],
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise StorageError(f"Local store is corrupt: {path}", path=str(path)) from exc


def ensure_unique_records(snapshot: Snapshot) -> None:
    """Reject a snapshot that names one challenge id or one (date, goalId) twice."""

    challenge_ids = [challenge.id for challenge in snapshot.challenges]
    if len(set(challenge_ids)) != len(challenge_ids):
        raise StorageError("Snapshot contains duplicate challenge ids")
    entry_keys = [entry.key for entry in snapshot.entries]
    if len(set(entry_keys)) != len(entry_keys):
        raise StorageError("Snapshot contains duplicate entries")
