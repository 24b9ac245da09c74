from __future__ import annotations

"""Transactional, indexed Replica Store adapter on SQLite."""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import StorageError
from .models import Challenge, DayEntry, Snapshot
from .store import ReplicaStore, ensure_unique_records


CURRENT_CHALLENGE_KEY = "currentChallengeId"


class SQLiteStore(ReplicaStore):
    """Replica on SQLite; multi-record operations share one transaction."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._create_tables()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open local store: {self.db_path}", path=self.db_path) from exc

    def _create_tables(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS challenges (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                payload TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entries (
                date TEXT NOT NULL,
                goal_id TEXT NOT NULL,
                completed INTEGER NOT NULL,
                note TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (date, goal_id)
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_entries_goal_id ON entries(goal_id);
            CREATE INDEX IF NOT EXISTS idx_challenges_status ON challenges(status);
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as exc:
            raise StorageError(f"Local store write failed: {exc}", path=self.db_path) from exc

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Local store read failed: {exc}", path=self.db_path) from exc

    @staticmethod
    def _challenge_row(challenge: Challenge) -> tuple[str, str, str, str]:
        return (challenge.id, challenge.status, challenge.updated_at, json.dumps(challenge.to_dict()))

    @staticmethod
    def _entry_row(entry: DayEntry) -> tuple[str, str, int, str | None, str]:
        return (entry.date, entry.goal_id, 1 if entry.completed else 0, entry.note, entry.updated_at)

    @staticmethod
    def _to_entry(row: sqlite3.Row) -> DayEntry:
        return DayEntry(
            date=row["date"],
            goal_id=row["goal_id"],
            completed=bool(row["completed"]),
            note=row["note"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _delete_goal_entries(conn: sqlite3.Connection, goal_ids: Iterable[str]) -> None:
        conn.executemany("DELETE FROM entries WHERE goal_id = ?", [(goal_id,) for goal_id in goal_ids])

    def _insert_snapshot(self, conn: sqlite3.Connection, snapshot: Snapshot) -> None:
        conn.execute("DELETE FROM challenges")
        conn.execute("DELETE FROM entries")
        conn.execute("DELETE FROM settings")
        conn.executemany(
            "INSERT INTO challenges (id, status, updated_at, payload) VALUES (?, ?, ?, ?)",
            [self._challenge_row(challenge) for challenge in snapshot.challenges],
        )
        conn.executemany(
            "INSERT INTO entries (date, goal_id, completed, note, updated_at) VALUES (?, ?, ?, ?, ?)",
            [self._entry_row(entry) for entry in snapshot.entries],
        )
        conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?)",
            (CURRENT_CHALLENGE_KEY, snapshot.current_challenge_id),
        )

    async def get_current_challenge_id(self) -> str | None:
        rows = self._read("SELECT value FROM settings WHERE key = ?", (CURRENT_CHALLENGE_KEY,))
        return rows[0]["value"] if rows else None

    async def set_current_challenge_id(self, challenge_id: str | None) -> None:
        with self._write() as conn:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (CURRENT_CHALLENGE_KEY, challenge_id),
            )

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        rows = self._read("SELECT payload FROM challenges WHERE id = ?", (challenge_id,))
        return Challenge.from_dict(json.loads(rows[0]["payload"])) if rows else None

    async def put_challenge(self, challenge: Challenge) -> None:
        existing = await self.get_challenge(challenge.id)
        with self._write() as conn:
            if existing is not None:
                self._delete_goal_entries(conn, set(existing.goal_ids) - set(challenge.goal_ids))
            conn.execute(
                """INSERT INTO challenges (id, status, updated_at, payload) VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       status = excluded.status,
                       updated_at = excluded.updated_at,
                       payload = excluded.payload""",
                self._challenge_row(challenge),
            )

    async def delete_challenge(self, challenge_id: str) -> None:
        existing = await self.get_challenge(challenge_id)
        with self._write() as conn:
            if existing is not None:
                self._delete_goal_entries(conn, existing.goal_ids)
            conn.execute("DELETE FROM challenges WHERE id = ?", (challenge_id,))
            conn.execute(
                "UPDATE settings SET value = NULL WHERE key = ? AND value = ?",
                (CURRENT_CHALLENGE_KEY, challenge_id),
            )

    async def list_challenges(self) -> list[Challenge]:
        rows = self._read("SELECT payload FROM challenges ORDER BY rowid")
        return [Challenge.from_dict(json.loads(row["payload"])) for row in rows]

    async def get_entry(self, date: str, goal_id: str) -> DayEntry | None:
        rows = self._read("SELECT * FROM entries WHERE date = ? AND goal_id = ?", (date, goal_id))
        return self._to_entry(rows[0]) if rows else None

    async def put_entry(self, entry: DayEntry) -> None:
        with self._write() as conn:
            conn.execute(
                """INSERT INTO entries (date, goal_id, completed, note, updated_at) VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(date, goal_id) DO UPDATE SET
                       completed = excluded.completed,
                       note = excluded.note,
                       updated_at = excluded.updated_at""",
                self._entry_row(entry),
            )

    async def list_entries(self) -> list[DayEntry]:
        rows = self._read("SELECT * FROM entries ORDER BY date, goal_id")
        return [self._to_entry(row) for row in rows]

    async def list_entries_by_goal_ids(self, goal_ids: Iterable[str]) -> list[DayEntry]:
        ids = sorted(set(goal_ids))
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        rows = self._read(
            f"SELECT * FROM entries WHERE goal_id IN ({placeholders}) ORDER BY date, goal_id",
            tuple(ids),
        )
        return [self._to_entry(row) for row in rows]

    async def list_entries_by_date(self, date: str) -> list[DayEntry]:
        rows = self._read("SELECT * FROM entries WHERE date = ? ORDER BY goal_id", (date,))
        return [self._to_entry(row) for row in rows]

    async def delete_entries_by_goal_ids(self, goal_ids: Iterable[str]) -> None:
        with self._write() as conn:
            self._delete_goal_entries(conn, set(goal_ids))

    async def export_all(self) -> Snapshot:
        return Snapshot(
            current_challenge_id=await self.get_current_challenge_id(),
            challenges=await self.list_challenges(),
            entries=await self.list_entries(),
        )

    async def import_all(self, snapshot: Snapshot) -> None:
        ensure_unique_records(snapshot)
        with self._write() as conn:
            self._insert_snapshot(conn, snapshot)

    async def clear_all(self) -> None:
        with self._write() as conn:
            self._insert_snapshot(conn, Snapshot())
