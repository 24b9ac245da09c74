from __future__ import annotations

"""Pull-merge-push reconciliation between a local replica and the remote authority.

Conflicts resolve per record by last-write-wins on `updatedAt`: challenges by
id, entries by `(goalId, date)`. Challenges merge before entries so every
merged entry can be checked against the goal it belongs to.
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .errors import HabitBuildError, NetworkError, ValidationError
from .models import Challenge, DayEntry, goal_owner_index
from .remote import RemoteReplica
from .store import ReplicaStore
from .telemetry import TelemetryLogger
from .wire import challenge_from_wire, entry_from_wire


T = TypeVar("T")


def _counts() -> dict[str, int]:
    return {"challenges": 0, "entries": 0}


@dataclass
class SyncResult:
    success: bool
    partial: bool = False
    skipped: bool = False
    pushed: dict[str, int] = field(default_factory=_counts)
    pulled: dict[str, int] = field(default_factory=_counts)
    dropped: int = 0
    new_watermark: str | None = None
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "partial": self.partial,
            "skipped": self.skipped,
            "pushed": dict(self.pushed),
            "pulled": dict(self.pulled),
            "dropped": self.dropped,
            "newWatermark": self.new_watermark,
        }
        if self.error:
            payload["error"] = self.error
            payload["code"] = self.code
        return payload


async def with_timeout(awaitable: Awaitable[T], timeout: float | None, label: str) -> T:
    """Await a remote call, turning an expired deadline into a `NetworkError`."""

    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as exc:
        raise NetworkError(f"{label} timed out after {timeout}s", code="TIMEOUT") from exc


def is_newer(incoming: str, existing: str | None) -> bool:
    """Last-write-wins test; a tie keeps the existing record."""

    return existing is None or incoming > existing


def select_for_push(
    challenges: list[Challenge],
    entries: list[DayEntry],
    last_sync_at: str | None,
    *,
    exclude_challenges: set[str] | None = None,
    exclude_entries: set[tuple[str, str]] | None = None,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Wire payloads of records changed since `last_sync_at` (everything when unset).

    Entries whose goal belongs to no local challenge cannot be attributed and are
    left out.
    """

    skip_challenges = exclude_challenges or set()
    skip_entries = exclude_entries or set()
    owners = goal_owner_index(challenges)

    def changed(updated_at: str) -> bool:
        return not last_sync_at or updated_at > last_sync_at

    challenge_payloads = [
        challenge.to_dict()
        for challenge in challenges
        if challenge.id not in skip_challenges and changed(challenge.updated_at)
    ]
    entry_payloads = []
    for entry in entries:
        if entry.key in skip_entries or not changed(entry.updated_at):
            continue
        challenge_id = owners.get(entry.goal_id)
        if challenge_id is not None:
            entry_payloads.append(entry.to_sync_dict(challenge_id))
    return challenge_payloads, entry_payloads


def _log(telemetry: TelemetryLogger | None, event_type: str, source: str, data: dict[str, Any]) -> None:
    if telemetry is not None:
        telemetry.log_event(event_type, source=source, data=data)


def _drop(telemetry: TelemetryLogger | None, source: str, kind: str, exc: ValidationError) -> None:
    _log(
        telemetry,
        "record.dropped",
        source,
        {"kind": kind, "record_id": exc.context.get("record_id"), "reason": exc.message},
    )


async def _merge_challenges(
    local: ReplicaStore,
    payloads: list[dict[str, Any]],
    telemetry: TelemetryLogger | None,
    source: str,
) -> tuple[dict[str, Challenge], set[str], int]:
    known = {challenge.id: challenge for challenge in await local.list_challenges()}
    applied: set[str] = set()
    dropped = 0
    for payload in payloads:
        try:
            incoming = challenge_from_wire(payload)
        except ValidationError as exc:
            dropped += 1
            _drop(telemetry, source, "challenge", exc)
            continue
        existing = known.get(incoming.id)
        if is_newer(incoming.updated_at, existing.updated_at if existing else None):
            await local.put_challenge(incoming)
            known[incoming.id] = incoming
            applied.add(incoming.id)
    return known, applied, dropped


async def _merge_entries(
    local: ReplicaStore,
    payloads: list[dict[str, Any]],
    challenges: dict[str, Challenge],
    telemetry: TelemetryLogger | None,
    source: str,
) -> tuple[set[tuple[str, str]], int]:
    owners = goal_owner_index(list(challenges.values()))
    known = {entry.key: entry for entry in await local.list_entries()}
    applied: set[tuple[str, str]] = set()
    dropped = 0
    for payload in payloads:
        try:
            challenge_id, incoming = entry_from_wire(payload)
            owner = owners.get(incoming.goal_id)
            if owner is None or owner != challenge_id:
                raise ValidationError(
                    f"entry {incoming.sync_id} does not belong to a known challenge",
                    record_id=payload.get("id"),
                )
        except ValidationError as exc:
            dropped += 1
            _drop(telemetry, source, "entry", exc)
            continue
        existing = known.get(incoming.key)
        if is_newer(incoming.updated_at, existing.updated_at if existing else None):
            await local.put_entry(incoming)
            known[incoming.key] = incoming
            applied.add(incoming.key)
    return applied, dropped


async def _clear_stale_pointer(local: ReplicaStore, challenges: dict[str, Challenge]) -> None:
    current_id = await local.get_current_challenge_id()
    if current_id is None:
        return
    current = challenges.get(current_id)
    if current is None or not current.is_active:
        await local.set_current_challenge_id(None)


async def reconcile(
    local: ReplicaStore,
    remote: RemoteReplica,
    last_sync_at: str | None,
    *,
    timeout: float | None = None,
    telemetry: TelemetryLogger | None = None,
    source: str = "service",
) -> SyncResult:
    """Run one pull, merge, push cycle and report the outcome as a value.

    A failed pull leaves the local replica untouched. A failed push keeps what
    was pulled but leaves the watermark at `last_sync_at`, so the unpushed
    records are selected again on the next run. A successful run advances the
    watermark to the `serverTime` of its pull.
    """

    result = SyncResult(success=False, new_watermark=last_sync_at)

    try:
        pulled = await with_timeout(remote.pull(last_sync_at), timeout, "pull")
    except HabitBuildError as exc:
        result.error, result.code = exc.message, exc.code
        _log(telemetry, "sync.failed", source, {"stage": "pull", "code": exc.code, "error": exc.message})
        return result

    try:
        challenges, applied_challenges, dropped_challenges = await _merge_challenges(
            local, pulled.challenges, telemetry, source
        )
        applied_entries, dropped_entries = await _merge_entries(local, pulled.entries, challenges, telemetry, source)
        await _clear_stale_pointer(local, challenges)
        challenge_payloads, entry_payloads = select_for_push(
            list(challenges.values()),
            await local.list_entries(),
            last_sync_at,
            exclude_challenges=applied_challenges,
            exclude_entries=applied_entries,
        )
    except HabitBuildError as exc:
        result.error, result.code = exc.message, exc.code
        _log(telemetry, "sync.failed", source, {"stage": "merge", "code": exc.code, "error": exc.message})
        return result

    result.pulled = {"challenges": len(applied_challenges), "entries": len(applied_entries)}
    result.dropped = dropped_challenges + dropped_entries

    try:
        pushed = await with_timeout(remote.push(challenge_payloads, entry_payloads, last_sync_at), timeout, "push")
        if not pushed.success:
            raise NetworkError("Remote rejected the push", code="PUSH_REJECTED")
    except HabitBuildError as exc:
        result.partial = True
        result.error, result.code = exc.message, exc.code
        _log(telemetry, "sync.partial", source, _summary(result))
        return result

    result.success = True
    result.pushed = {"challenges": len(challenge_payloads), "entries": len(entry_payloads)}
    # Records another device pushes between this pull and push sort above the pull time.
    result.new_watermark = pulled.server_time
    _log(telemetry, "sync.completed", source, _summary(result))
    return result


def _summary(result: SyncResult) -> dict[str, Any]:
    data: dict[str, Any] = {
        "pushed_challenges": result.pushed["challenges"],
        "pushed_entries": result.pushed["entries"],
        "pulled_challenges": result.pulled["challenges"],
        "pulled_entries": result.pulled["entries"],
        "dropped": result.dropped,
    }
    if result.code:
        data["code"] = result.code
    return data
