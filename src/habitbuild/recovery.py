from __future__ import annotations

"""Reseed an empty local replica from the remote authority."""

from dataclasses import dataclass
from typing import Any

from .errors import HabitBuildError, ValidationError
from .models import Challenge, DayEntry, Snapshot, goal_owner_index
from .remote import RemoteReplica
from .store import ReplicaStore
from .sync import with_timeout
from .telemetry import TelemetryLogger
from .wire import challenge_from_wire, entry_from_wire


@dataclass
class RecoveryResult:
    recovered: bool
    challenges: int = 0
    entries: int = 0
    dropped: int = 0
    current_challenge_id: str | None = None
    new_watermark: str | None = None
    reason: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recovered": self.recovered,
            "challenges": self.challenges,
            "entries": self.entries,
            "dropped": self.dropped,
            "currentChallengeId": self.current_challenge_id,
            "newWatermark": self.new_watermark,
            "reason": self.reason,
            "code": self.code,
        }


def pick_current(challenges: list[Challenge]) -> str | None:
    """Most recently updated active challenge, if any.

    A terminal challenge is never made current, even when nothing is active.
    """

    active = [challenge for challenge in challenges if challenge.is_active]
    if not active:
        return None
    return max(active, key=lambda challenge: challenge.updated_at).id


def _build_snapshot(
    challenge_payloads: list[dict[str, Any]],
    entry_payloads: list[dict[str, Any]],
) -> tuple[Snapshot, int]:
    dropped = 0
    challenges: dict[str, Challenge] = {}
    for payload in challenge_payloads:
        try:
            challenge = challenge_from_wire(payload)
        except ValidationError:
            dropped += 1
            continue
        existing = challenges.get(challenge.id)
        if existing is None or challenge.updated_at > existing.updated_at:
            challenges[challenge.id] = challenge

    owners = goal_owner_index(list(challenges.values()))
    entries: dict[tuple[str, str], DayEntry] = {}
    for payload in entry_payloads:
        try:
            challenge_id, entry = entry_from_wire(payload)
        except ValidationError:
            dropped += 1
            continue
        if owners.get(entry.goal_id) != challenge_id:
            dropped += 1
            continue
        existing_entry = entries.get(entry.key)
        if existing_entry is None or entry.updated_at > existing_entry.updated_at:
            entries[entry.key] = entry

    ordered = list(challenges.values())
    snapshot = Snapshot(
        current_challenge_id=pick_current(ordered),
        challenges=ordered,
        entries=[entries[key] for key in sorted(entries)],
    )
    return snapshot, dropped


async def recover_from_remote(
    local: ReplicaStore,
    remote: RemoteReplica,
    *,
    timeout: float | None = None,
    telemetry: TelemetryLogger | None = None,
    source: str = "service",
) -> RecoveryResult:
    """Full pull into an empty replica through one atomic import.

    Does nothing when the local replica already holds challenges or the remote
    has none. Failures come back as `recovered=False` with a reason.
    """

    def skipped(reason: str, code: str | None = None) -> RecoveryResult:
        if telemetry is not None:
            telemetry.log_event("recovery.skipped", source=source, data={"reason": reason, "code": code})
        return RecoveryResult(recovered=False, reason=reason, code=code)

    try:
        if not await local.is_empty():
            return skipped("local_not_empty")
        pulled = await with_timeout(remote.pull(None), timeout, "pull")
    except HabitBuildError as exc:
        return skipped(exc.message, exc.code)

    if not pulled.challenges:
        return skipped("remote_empty")

    snapshot, dropped = _build_snapshot(pulled.challenges, pulled.entries)
    if not snapshot.challenges:
        return skipped("no_valid_challenges")

    try:
        await local.import_all(snapshot)
    except HabitBuildError as exc:
        return skipped(exc.message, exc.code)

    result = RecoveryResult(
        recovered=True,
        challenges=len(snapshot.challenges),
        entries=len(snapshot.entries),
        dropped=dropped,
        current_challenge_id=snapshot.current_challenge_id,
        new_watermark=pulled.server_time,
    )
    if telemetry is not None:
        telemetry.log_event(
            "recovery.completed",
            source=source,
            data={"challenges": result.challenges, "entries": result.entries, "dropped": dropped},
        )
    return result
