from __future__ import annotations

"""Error taxonomy shared by stores, the sync reconciler, and the HTTP surface."""

from typing import Any


class HabitBuildError(Exception):
    """Structured error with a stable code for result values and API responses."""

    code = "HABITBUILD_ERROR"

    def __init__(self, message: str, *, code: str | None = None, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "error": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class NetworkError(HabitBuildError):
    """Remote unreachable, timed out, or answered with a server-side failure."""

    code = "NETWORK_ERROR"


class AuthError(HabitBuildError):
    """No usable identity; sync is skipped rather than reported as a failure."""

    code = "AUTH_REQUIRED"


class ValidationError(HabitBuildError, ValueError):
    """One record is structurally invalid; callers drop it and continue."""

    code = "INVALID_RECORD"


class StorageError(HabitBuildError):
    """Local persistence I/O failed."""

    code = "STORAGE_ERROR"


class InvalidTransitionError(HabitBuildError, ValueError):
    code = "INVALID_TRANSITION"
