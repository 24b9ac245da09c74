from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from habitbuild.dates import format_timestamp
from habitbuild.errors import NetworkError
from habitbuild.models import Challenge, DayEntry, Goal
from habitbuild.remote import PullResult, PushResult, RemoteReplica
from habitbuild.server import SyncServer
from habitbuild.store import MemoryStore
from habitbuild.sync import reconcile, select_for_push
from habitbuild.telemetry import TelemetryLogger


class StepClock:
    """Server clock that advances one second per reading."""

    def __init__(self, start: datetime = datetime(2024, 1, 5, tzinfo=UTC)) -> None:
        self.value = start

    def __call__(self) -> str:
        self.value += timedelta(seconds=1)
        return format_timestamp(self.value)


class FlakyRemote(RemoteReplica):
    def __init__(self, inner: RemoteReplica, *, fail_pull: bool = False, fail_push: bool = False, delay: float = 0) -> None:
        self.inner = inner
        self.fail_pull = fail_pull
        self.fail_push = fail_push
        self.delay = delay
        self.pushes: list[tuple[list[dict[str, Any]], list[dict[str, Any]]]] = []

    async def pull(self, since: str | None) -> PullResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_pull:
            raise NetworkError("offline")
        return await self.inner.pull(since)

    async def push(self, challenges: list[dict[str, Any]], entries: list[dict[str, Any]], last_sync_at: str | None) -> PushResult:
        self.pushes.append((challenges, entries))
        if self.fail_push:
            raise NetworkError("connection reset")
        return await self.inner.push(challenges, entries, last_sync_at)


class StaticRemote(RemoteReplica):
    def __init__(self, challenges: list[dict[str, Any]], entries: list[dict[str, Any]]) -> None:
        self.payload = PullResult(challenges=challenges, entries=entries, server_time="2024-01-06T00:00:00.000Z")

    async def pull(self, since: str | None) -> PullResult:
        return self.payload

    async def push(self, challenges: list[dict[str, Any]], entries: list[dict[str, Any]], last_sync_at: str | None) -> PushResult:
        return PushResult(success=True, synced_at="2024-01-06T00:00:01.000Z")


class InterleavingRemote(RemoteReplica):
    """Runs `between` after the pull answers and before the push is sent."""

    def __init__(self, inner: RemoteReplica, between: Callable[[], Awaitable[None]]) -> None:
        self.inner = inner
        self.between = between

    async def pull(self, since: str | None) -> PullResult:
        result = await self.inner.pull(since)
        await self.between()
        return result

    async def push(self, challenges: list[dict[str, Any]], entries: list[dict[str, Any]], last_sync_at: str | None) -> PushResult:
        return await self.inner.push(challenges, entries, last_sync_at)


def _challenge(updated_at: str = "2024-01-01T08:00:00.000Z", **changes: Any) -> Challenge:
    challenge = Challenge(
        id="c1",
        name="Hydrate",
        start_date="2024-01-01",
        duration=30,
        strict_mode=False,
        goals=(Goal(id="g1", name="Water", color="sky"), Goal(id="g2", name="Walk", color="sage")),
        updated_at=updated_at,
    )
    return challenge.with_changes(**changes) if changes else challenge


def _entry(day: str, goal_id: str, updated_at: str, completed: bool = True, note: str | None = None) -> DayEntry:
    return DayEntry(date=day, goal_id=goal_id, completed=completed, updated_at=updated_at, note=note)


def _server() -> SyncServer:
    return SyncServer.with_tokens({"token-u1": "u1"}, clock=StepClock())


def test_first_sync_pushes_everything_and_adopts_pull_server_time() -> None:
    async def scenario() -> None:
        server = _server()
        local = MemoryStore()
        await local.put_challenge(_challenge())
        await local.put_entry(_entry("2024-01-01", "g1", "2024-01-01T20:00:00.000Z"))

        result = await reconcile(local, server.as_remote("u1"), None)

        assert result.success is True
        assert result.pushed == {"challenges": 1, "entries": 1}
        assert result.new_watermark == "2024-01-05T00:00:01.000Z"
        remote_store = server.store_for("u1")
        assert await remote_store.get_challenge("c1") == _challenge()
        assert (await remote_store.get_entry("2024-01-01", "g1")).completed is True

    asyncio.run(scenario())


def test_last_write_wins_converges_in_either_order() -> None:
    older = _entry("2024-01-02", "g1", "2024-01-02T10:00:00.000Z", completed=True, note="A")
    newer = _entry("2024-01-02", "g1", "2024-01-02T11:00:00.000Z", completed=False, note="B")

    async def converge(first: DayEntry, second: DayEntry) -> DayEntry:
        server = _server()
        for device_entry in (first, second):
            device = MemoryStore()
            await device.put_challenge(_challenge())
            await device.put_entry(device_entry)
            await reconcile(device, server.as_remote("u1"), None)
        reader = MemoryStore()
        await reconcile(reader, server.as_remote("u1"), None)
        return await reader.get_entry("2024-01-02", "g1")

    assert asyncio.run(converge(older, newer)) == newer
    assert asyncio.run(converge(newer, older)) == newer


def test_records_pushed_by_another_device_mid_sync_are_pulled_next_time() -> None:
    late = _entry("2024-01-04", "g1", "2024-01-05T00:00:01.500Z", note="from the other device")

    async def scenario() -> None:
        server = _server()
        await server.store_for("u1").put_challenge(_challenge())
        local = MemoryStore()
        await local.put_challenge(_challenge())

        async def other_device_pushes() -> None:
            await server.push("u1", [], [late.to_sync_dict("c1")])

        first = await reconcile(local, InterleavingRemote(server.as_remote("u1"), other_device_pushes), None)
        assert first.success is True
        assert first.new_watermark == "2024-01-05T00:00:01.000Z"
        assert await local.get_entry("2024-01-04", "g1") is None

        second = await reconcile(local, server.as_remote("u1"), first.new_watermark)
        assert second.pulled == {"challenges": 0, "entries": 1}
        assert (await local.get_entry("2024-01-04", "g1")).note == "from the other device"

    asyncio.run(scenario())


def test_pushing_the_same_records_twice_changes_nothing() -> None:
    async def scenario() -> None:
        server = _server()
        challenges = [_challenge().to_dict()]
        entries = [_entry("2024-01-01", "g1", "2024-01-01T20:00:00.000Z").to_sync_dict("c1")]

        first = await server.push("u1", challenges, entries)
        before = await server.store_for("u1").export_all()
        second = await server.push("u1", challenges, entries)
        after = await server.store_for("u1").export_all()

        assert first["applied"] == {"challenges": 1, "entries": 1}
        assert second["applied"] == {"challenges": 0, "entries": 0}
        assert after.challenges == before.challenges
        assert after.entries == before.entries

    asyncio.run(scenario())


def test_push_failure_keeps_pulled_records_and_retries_local_changes() -> None:
    async def scenario() -> None:
        server = _server()
        remote_store = server.store_for("u1")
        await remote_store.put_challenge(_challenge())
        await remote_store.put_entry(_entry("2024-01-01", "g1", "2024-01-01T20:00:00.000Z"))

        local = MemoryStore()
        await local.put_challenge(_challenge())
        await local.put_entry(_entry("2024-01-02", "g2", "2024-01-02T10:00:00.000Z"))
        watermark = "2024-01-01T09:00:00.000Z"

        offline = FlakyRemote(server.as_remote("u1"), fail_push=True)
        result = await reconcile(local, offline, watermark)

        assert result.success is False
        assert result.partial is True
        assert result.code == "NETWORK_ERROR"
        assert result.pulled == {"challenges": 0, "entries": 1}
        assert result.new_watermark == watermark
        assert await local.get_entry("2024-01-01", "g1") is not None
        assert await remote_store.get_entry("2024-01-02", "g2") is None

        retry = FlakyRemote(server.as_remote("u1"))
        second = await reconcile(local, retry, result.new_watermark)
        assert second.success is True
        pushed_entries = retry.pushes[0][1]
        assert ("g2", "2024-01-02") in {(item["goalId"], item["date"]) for item in pushed_entries}
        assert (await remote_store.get_entry("2024-01-02", "g2")).completed is True

    asyncio.run(scenario())


def test_pull_failure_leaves_local_untouched() -> None:
    async def scenario() -> None:
        local = MemoryStore()
        await local.put_challenge(_challenge())
        before = await local.export_all()

        result = await reconcile(local, FlakyRemote(_server().as_remote("u1"), fail_pull=True), "2024-01-01T00:00:00.000Z")

        assert result.success is False
        assert result.partial is False
        assert result.new_watermark == "2024-01-01T00:00:00.000Z"
        assert (await local.export_all()) == before

    asyncio.run(scenario())


def test_timeout_is_reported_as_network_failure() -> None:
    async def scenario() -> None:
        slow = FlakyRemote(_server().as_remote("u1"), delay=0.5)
        result = await reconcile(MemoryStore(), slow, None, timeout=0.01)
        assert result.success is False
        assert result.code == "TIMEOUT"

    asyncio.run(scenario())


def test_invalid_and_orphaned_records_are_dropped(tmp_path: Path) -> None:
    good = _challenge("2024-01-03T00:00:00.000Z").to_dict()
    broken = {**_challenge().to_dict(), "id": "c2", "duration": 0}
    entries = [
        _entry("2024-01-01", "g1", "2024-01-03T01:00:00.000Z").to_sync_dict("c1"),
        _entry("2024-01-01", "ghost", "2024-01-03T01:00:00.000Z").to_sync_dict("c9"),
        {"id": "bad", "challengeId": "c1", "goalId": "g2", "date": "2024-13-40", "completed": True, "updatedAt": "2024-01-03T01:00:00.000Z"},
    ]
    telemetry = TelemetryLogger(tmp_path / "events.jsonl")

    async def scenario() -> None:
        local = MemoryStore()
        result = await reconcile(local, StaticRemote([good, broken], entries), None, telemetry=telemetry)
        assert result.success is True
        assert result.dropped == 3
        assert result.pulled == {"challenges": 1, "entries": 1}
        assert await local.get_challenge("c2") is None
        assert [entry.goal_id for entry in await local.list_entries()] == ["g1"]

    asyncio.run(scenario())
    events = [json.loads(line) for line in (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()]
    assert sum(1 for event in events if event["event_type"] == "record.dropped") == 3
    assert events[-1]["event_type"] == "sync.completed"


def test_pointer_cleared_when_remote_ends_the_current_challenge() -> None:
    ended = _challenge("2024-01-04T00:00:00.000Z", status="abandoned", end_date="2024-01-04")

    async def scenario() -> None:
        local = MemoryStore()
        await local.put_challenge(_challenge())
        await local.set_current_challenge_id("c1")
        await reconcile(local, StaticRemote([ended.to_dict()], []), "2024-01-02T00:00:00.000Z")
        assert (await local.get_challenge("c1")).status == "abandoned"
        assert await local.get_current_challenge_id() is None

    asyncio.run(scenario())


def test_stale_remote_record_does_not_overwrite_newer_local() -> None:
    stale = _challenge("2024-01-01T08:00:00.000Z", name="Old name")

    async def scenario() -> None:
        local = MemoryStore()
        await local.put_challenge(_challenge("2024-01-02T08:00:00.000Z", name="New name"))
        result = await reconcile(local, StaticRemote([stale.to_dict()], []), None)
        assert result.pulled["challenges"] == 0
        assert (await local.get_challenge("c1")).name == "New name"

    asyncio.run(scenario())


def test_remote_timestamps_with_offsets_compare_by_instant() -> None:
    def remote(day: str, goal_id: str, updated_at: str) -> dict[str, Any]:
        return {**_entry(day, goal_id, "2024-01-01T00:00:00.000Z", note="remote").to_sync_dict("c1"), "updatedAt": updated_at}

    pulled = [
        remote("2024-01-01", "g1", "2024-01-01T10:00:00Z"),
        remote("2024-01-01", "g2", "2024-01-01T12:00:00+05:00"),
        remote("2024-01-02", "g1", "2024-01-01T16:00:00.25+05:00"),
    ]

    async def scenario() -> None:
        local = MemoryStore()
        await local.put_challenge(_challenge())
        await local.put_entry(_entry("2024-01-01", "g1", "2024-01-01T10:00:00.500Z", note="local"))
        await local.put_entry(_entry("2024-01-01", "g2", "2024-01-01T10:00:00.000Z", note="local"))

        result = await reconcile(local, StaticRemote([], pulled), None)

        assert result.pulled["entries"] == 1
        assert (await local.get_entry("2024-01-01", "g1")).note == "local"
        assert (await local.get_entry("2024-01-01", "g2")).note == "local"
        adopted = await local.get_entry("2024-01-02", "g1")
        assert adopted.note == "remote"
        assert adopted.updated_at == "2024-01-01T11:00:00.250Z"

    asyncio.run(scenario())


def test_push_selection_skips_unchanged_and_unowned_entries() -> None:
    challenges = [_challenge("2024-01-01T08:00:00.000Z")]
    entries = [
        _entry("2024-01-01", "g1", "2024-01-01T07:00:00.000Z"),
        _entry("2024-01-02", "g2", "2024-01-02T07:00:00.000Z"),
        _entry("2024-01-02", "orphan", "2024-01-02T07:00:00.000Z"),
    ]
    selected_challenges, selected_entries = select_for_push(challenges, entries, "2024-01-01T12:00:00.000Z")
    assert selected_challenges == []
    assert selected_entries == [entries[1].to_sync_dict("c1")]

    everything_challenges, everything_entries = select_for_push(challenges, entries, None)
    assert len(everything_challenges) == 1
    assert [item["id"] for item in everything_entries] == ["g1-2024-01-01", "g2-2024-01-02"]
