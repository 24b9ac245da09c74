from __future__ import annotations

"""Remote replica contract and the HTTP client that speaks the sync wire protocol."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from .dates import EPOCH
from .errors import AuthError, NetworkError


@dataclass
class PullResult:
    """Raw wire records; the reconciler validates each one before merging."""

    challenges: list[dict[str, Any]] = field(default_factory=list)
    entries: list[dict[str, Any]] = field(default_factory=list)
    server_time: str = EPOCH


@dataclass(frozen=True)
class PushResult:
    success: bool
    synced_at: str


class RemoteReplica(ABC):
    """The authority a local replica reconciles with."""

    @abstractmethod
    async def pull(self, since: str | None) -> PullResult: ...

    @abstractmethod
    async def push(
        self,
        challenges: list[dict[str, Any]],
        entries: list[dict[str, Any]],
        last_sync_at: str | None,
    ) -> PushResult: ...


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class HttpRemoteReplica(RemoteReplica):
    """`GET /sync/pull` and `POST /sync/push` over httpx with bearer auth.

    Pass `transport` (for example `httpx.ASGITransport(app=...)`) to talk to an
    in-process app instead of the network.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out", code="TIMEOUT") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {path} failed: {exc.__class__.__name__}") from exc

        if response.status_code in (401, 403):
            body = _error_payload(response)
            raise AuthError(str(body.get("error") or "Unauthorized"), code=str(body.get("code") or "AUTH_REQUIRED"))
        if response.is_error:
            body = _error_payload(response)
            raise NetworkError(
                str(body.get("error") or f"{method} {path} returned {response.status_code}"),
                code=str(body.get("code") or "NETWORK_ERROR"),
                status=response.status_code,
            )
        payload = _error_payload(response)
        if not payload:
            raise NetworkError(f"{method} {path} returned a non-object body", code="BAD_RESPONSE")
        return payload

    async def pull(self, since: str | None) -> PullResult:
        payload = await self._request("GET", "/sync/pull", params={"since": since or EPOCH})
        challenges = payload.get("challenges", [])
        entries = payload.get("entries", [])
        server_time = payload.get("serverTime")
        if not isinstance(challenges, list) or not isinstance(entries, list) or not isinstance(server_time, str):
            raise NetworkError("Pull response is missing challenges, entries or serverTime", code="BAD_RESPONSE")
        return PullResult(challenges=challenges, entries=entries, server_time=server_time)

    async def push(
        self,
        challenges: list[dict[str, Any]],
        entries: list[dict[str, Any]],
        last_sync_at: str | None,
    ) -> PushResult:
        payload = await self._request(
            "POST",
            "/sync/push",
            json={"challenges": challenges, "entries": entries, "lastSyncAt": last_sync_at},
        )
        synced_at = payload.get("syncedAt")
        if not isinstance(synced_at, str):
            raise NetworkError("Push response is missing syncedAt", code="BAD_RESPONSE")
        return PushResult(success=bool(payload.get("success", True)), synced_at=synced_at)
