from __future__ import annotations

"""Local account record: identity, bearer credential, and the sync watermark."""

from dataclasses import asdict, dataclass
from json import JSONDecodeError
from pathlib import Path
from typing import Any

from .dates import utc_now_iso
from .errors import AuthError, StorageError
from .paths import load_json, save_json


@dataclass
class Account:
    id: str
    name: str
    auth_token: str
    last_sync_at: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Account":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            auth_token=str(payload["auth_token"]),
            last_sync_at=payload.get("last_sync_at") or None,
            created_at=str(payload.get("created_at") or ""),
        )


class AccountStore:
    """`account.json` in the state directory; absent file means logged out."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Account | None:
        try:
            payload = load_json(self.path, None)
        except (OSError, JSONDecodeError) as exc:
            raise StorageError(f"Could not read account file: {self.path}", path=str(self.path)) from exc
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("auth_token"):
            return None
        return Account.from_dict(payload)

    def save(self, account: Account) -> Account:
        if not account.created_at:
            account.created_at = utc_now_iso()
        try:
            save_json(self.path, account.to_dict())
        except OSError as exc:
            raise StorageError(f"Could not write account file: {self.path}", path=str(self.path)) from exc
        return account

    def login(self, user_id: str, token: str, name: str = "") -> Account:
        """Store a credential issued elsewhere, keeping the watermark of the same identity."""

        existing = self.load()
        keep = existing is not None and existing.id == user_id
        return self.save(
            Account(
                id=user_id,
                name=name or (existing.name if keep and existing else ""),
                auth_token=token,
                last_sync_at=existing.last_sync_at if keep and existing else None,
                created_at=existing.created_at if keep and existing else "",
            )
        )

    def logout(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True

    def require_account(self) -> Account:
        account = self.load()
        if account is None:
            raise AuthError("Not logged in", hint="Run `habitbuild login` with a token issued by the sync server.")
        return account

    def update_last_sync_at(self, value: str) -> None:
        account = self.require_account()
        account.last_sync_at = value
        self.save(account)
