from __future__ import annotations

"""Remote authority: one replica per identity, last-write-wins apply on push."""

import asyncio
import hashlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .dates import EPOCH, canonical_timestamp, utc_now_iso
from .errors import AuthError, ValidationError
from .models import goal_owner_index
from .remote import PullResult, PushResult, RemoteReplica
from .store import MemoryStore, ReplicaStore
from .sync import is_newer
from .telemetry import TelemetryLogger
from .wire import challenge_from_wire, entry_from_wire


MAX_PUSH_CHALLENGES = 50
MAX_PUSH_ENTRIES = 500

TOKENS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["tokens"],
    "properties": {
        "tokens": {
            "type": "object",
            "propertyNames": {"pattern": r"^[A-Za-z0-9_-]{1,64}$"},
            "additionalProperties": {"type": "string", "pattern": r"^[0-9a-f]{64}$"},
        }
    },
    "additionalProperties": False,
}
_TOKENS_VALIDATOR = Draft202012Validator(TOKENS_SCHEMA)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def load_tokens(path: Path) -> dict[str, str]:
    """Read `{tokens: {user_id: sha256(token)}}` and return `{hash: user_id}`."""

    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ValueError(f"Could not read tokens file: {path}") from exc
    errors = sorted(_TOKENS_VALIDATOR.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Tokens file failed validation at {where}: {first.message}")
    return {digest: user_id for user_id, digest in payload["tokens"].items()}


class SyncServer:
    """Holds every identity's records and applies pushes one identity at a time."""

    def __init__(
        self,
        token_hashes: dict[str, str],
        *,
        store_factory: Callable[[str], ReplicaStore] | None = None,
        telemetry: TelemetryLogger | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._token_hashes = dict(token_hashes)
        self._store_factory = store_factory or (lambda _user_id: MemoryStore())
        self._stores: dict[str, ReplicaStore] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.telemetry = telemetry
        self._clock = clock

    @classmethod
    def with_tokens(cls, tokens: dict[str, str], **kwargs: Any) -> "SyncServer":
        """Build from plain `{token: user_id}` pairs."""

        return cls({hash_token(token): user_id for token, user_id in tokens.items()}, **kwargs)

    def authenticate(self, token: str | None) -> str:
        if not token:
            raise AuthError("Not authenticated", code="AUTH_REQUIRED")
        user_id = self._token_hashes.get(hash_token(token))
        if user_id is None:
            raise AuthError("Invalid token", code="INVALID_TOKEN")
        return user_id

    def store_for(self, user_id: str) -> ReplicaStore:
        if user_id not in self._stores:
            self._stores[user_id] = self._store_factory(user_id)
        return self._stores[user_id]

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def pull(self, user_id: str, since: str | None) -> dict[str, Any]:
        """Records updated strictly after `since` (epoch when absent)."""

        watermark = canonical_timestamp(since) if since else EPOCH
        if watermark is None:
            raise ValidationError(f"since is not a valid timestamp: {since}", code="INVALID_SINCE")
        store = self.store_for(user_id)
        async with self._lock_for(user_id):
            challenges = await store.list_challenges()
            owners = goal_owner_index(challenges)
            changed_challenges = sorted(
                (challenge for challenge in challenges if challenge.updated_at > watermark),
                key=lambda challenge: challenge.updated_at,
            )
            changed_entries = sorted(
                (entry for entry in await store.list_entries() if entry.updated_at > watermark),
                key=lambda entry: entry.updated_at,
            )
            return {
                "challenges": [challenge.to_dict() for challenge in changed_challenges],
                "entries": [
                    entry.to_sync_dict(owners[entry.goal_id]) for entry in changed_entries if entry.goal_id in owners
                ],
                "serverTime": self._clock(),
            }

    async def push(
        self,
        user_id: str,
        challenges: list[Any],
        entries: list[Any],
        last_sync_at: str | None = None,
    ) -> dict[str, Any]:
        """Apply valid, newer records; invalid or foreign ones are skipped silently."""

        if len(challenges) > MAX_PUSH_CHALLENGES:
            raise ValidationError("Too many challenges in request", code="TOO_MANY_CHALLENGES")
        if len(entries) > MAX_PUSH_ENTRIES:
            raise ValidationError("Too many entries in request", code="TOO_MANY_ENTRIES")

        store = self.store_for(user_id)
        applied = {"challenges": 0, "entries": 0}
        skipped = 0
        async with self._lock_for(user_id):
            for payload in challenges:
                try:
                    incoming = challenge_from_wire(payload)
                except ValidationError:
                    skipped += 1
                    continue
                existing = await store.get_challenge(incoming.id)
                if is_newer(incoming.updated_at, existing.updated_at if existing else None):
                    await store.put_challenge(incoming)
                    applied["challenges"] += 1

            owners = goal_owner_index(await store.list_challenges())
            for payload in entries:
                try:
                    challenge_id, entry = entry_from_wire(payload)
                except ValidationError:
                    skipped += 1
                    continue
                if owners.get(entry.goal_id) != challenge_id:
                    skipped += 1
                    continue
                existing_entry = await store.get_entry(entry.date, entry.goal_id)
                if is_newer(entry.updated_at, existing_entry.updated_at if existing_entry else None):
                    await store.put_entry(entry)
                    applied["entries"] += 1

        if skipped and self.telemetry is not None:
            self.telemetry.log_event("record.dropped", source="api", data={"kind": "push", "count": skipped})
        return {"success": True, "syncedAt": self._clock(), "applied": applied, "skipped": skipped}

    def as_remote(self, user_id: str) -> "LocalRemoteReplica":
        return LocalRemoteReplica(self, user_id)


class LocalRemoteReplica(RemoteReplica):
    """In-process remote bound to one identity of a `SyncServer`."""

    def __init__(self, server: SyncServer, user_id: str) -> None:
        self.server = server
        self.user_id = user_id

    async def pull(self, since: str | None) -> PullResult:
        payload = await self.server.pull(self.user_id, since)
        return PullResult(
            challenges=payload["challenges"],
            entries=payload["entries"],
            server_time=payload["serverTime"],
        )

    async def push(
        self,
        challenges: list[dict[str, Any]],
        entries: list[dict[str, Any]],
        last_sync_at: str | None,
    ) -> PushResult:
        payload = await self.server.push(self.user_id, challenges, entries, last_sync_at)
        return PushResult(success=payload["success"], synced_at=payload["syncedAt"])
