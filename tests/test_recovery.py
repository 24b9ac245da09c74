from __future__ import annotations

import asyncio
from typing import Any

from habitbuild.errors import NetworkError
from habitbuild.models import Challenge, DayEntry, Goal
from habitbuild.recovery import pick_current, recover_from_remote
from habitbuild.remote import PullResult, PushResult, RemoteReplica
from habitbuild.store import MemoryStore


SERVER_TIME = "2024-02-01T12:00:00.000Z"


class SnapshotRemote(RemoteReplica):
    def __init__(self, challenges: list[dict[str, Any]], entries: list[dict[str, Any]] | None = None, *, fail: bool = False) -> None:
        self.challenges = challenges
        self.entries = entries or []
        self.fail = fail
        self.since: list[str | None] = []

    async def pull(self, since: str | None) -> PullResult:
        self.since.append(since)
        if self.fail:
            raise NetworkError("offline")
        return PullResult(challenges=self.challenges, entries=self.entries, server_time=SERVER_TIME)

    async def push(self, challenges: list[dict[str, Any]], entries: list[dict[str, Any]], last_sync_at: str | None) -> PushResult:
        raise AssertionError("recovery never pushes")


def _challenge(challenge_id: str, updated_at: str, status: str = "active", goal_id: str | None = None) -> Challenge:
    return Challenge(
        id=challenge_id,
        name=f"Challenge {challenge_id}",
        start_date="2024-01-01",
        duration=30,
        strict_mode=False,
        goals=(Goal(id=goal_id or f"{challenge_id}-g", name="Read", color="plum"),),
        updated_at=updated_at,
        status=status,
        end_date=None if status == "active" else "2024-01-20",
    )


def test_recovery_restores_records_and_picks_newest_active() -> None:
    old_active = _challenge("a", "2024-01-10T00:00:00.000Z")
    new_active = _challenge("b", "2024-01-15T00:00:00.000Z")
    finished = _challenge("c", "2024-01-25T00:00:00.000Z", status="completed")
    entry = DayEntry(date="2024-01-02", goal_id="b-g", completed=True, updated_at="2024-01-02T20:00:00.000Z")
    remote = SnapshotRemote(
        [old_active.to_dict(), new_active.to_dict(), finished.to_dict()],
        [entry.to_sync_dict("b")],
    )

    async def scenario() -> None:
        local = MemoryStore()
        result = await recover_from_remote(local, remote)

        assert result.recovered is True
        assert result.challenges == 3
        assert result.entries == 1
        assert result.current_challenge_id == "b"
        assert result.new_watermark == SERVER_TIME
        assert remote.since == [None]
        assert await local.get_current_challenge_id() == "b"
        assert await local.get_entry("2024-01-02", "b-g") == entry

    asyncio.run(scenario())


def test_recovery_leaves_pointer_empty_when_nothing_is_active() -> None:
    remote = SnapshotRemote([_challenge("c", "2024-01-25T00:00:00.000Z", status="failed").to_dict()])

    async def scenario() -> None:
        local = MemoryStore()
        result = await recover_from_remote(local, remote)
        assert result.recovered is True
        assert result.current_challenge_id is None
        assert await local.get_current_challenge_id() is None
        assert len(await local.list_challenges()) == 1

    asyncio.run(scenario())


def test_recovery_skips_when_local_has_data() -> None:
    remote = SnapshotRemote([_challenge("a", "2024-01-10T00:00:00.000Z").to_dict()])

    async def scenario() -> None:
        local = MemoryStore()
        await local.put_challenge(_challenge("mine", "2024-01-01T00:00:00.000Z"))
        result = await recover_from_remote(local, remote)
        assert result.recovered is False
        assert result.reason == "local_not_empty"
        assert remote.since == []
        assert [challenge.id for challenge in await local.list_challenges()] == ["mine"]

    asyncio.run(scenario())


def test_recovery_skips_when_remote_is_empty_or_unreachable() -> None:
    async def scenario() -> None:
        empty = await recover_from_remote(MemoryStore(), SnapshotRemote([]))
        assert empty.recovered is False
        assert empty.reason == "remote_empty"

        offline = await recover_from_remote(MemoryStore(), SnapshotRemote([], fail=True))
        assert offline.recovered is False
        assert offline.code == "NETWORK_ERROR"

    asyncio.run(scenario())


def test_recovery_drops_invalid_records() -> None:
    valid = _challenge("a", "2024-01-10T00:00:00.000Z")
    invalid = {**valid.to_dict(), "id": "z", "goals": []}
    orphan = DayEntry(date="2024-01-02", goal_id="nobody", completed=True, updated_at="2024-01-02T20:00:00.000Z")

    async def scenario() -> None:
        local = MemoryStore()
        result = await recover_from_remote(local, SnapshotRemote([valid.to_dict(), invalid], [orphan.to_sync_dict("a")]))
        assert result.recovered is True
        assert result.dropped == 2
        assert [challenge.id for challenge in await local.list_challenges()] == ["a"]
        assert await local.list_entries() == []

        nothing_valid = await recover_from_remote(MemoryStore(), SnapshotRemote([invalid]))
        assert nothing_valid.recovered is False
        assert nothing_valid.reason == "no_valid_challenges"

    asyncio.run(scenario())


def test_pick_current_ignores_terminal_challenges() -> None:
    challenges = [
        _challenge("a", "2024-01-10T00:00:00.000Z"),
        _challenge("b", "2024-01-30T00:00:00.000Z", status="abandoned"),
    ]
    assert pick_current(challenges) == "a"
    assert pick_current(challenges[1:]) is None
