from __future__ import annotations

"""HTTP surface of the remote authority: bearer-authenticated pull and push."""

import re
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import AuthError, HabitBuildError, ValidationError
from .server import MAX_PUSH_CHALLENGES, MAX_PUSH_ENTRIES, SyncServer


TRACE_HEADER = "X-Habitbuild-Trace-Id"
TRACE_ID_PATTERN = re.compile(r"^[A-Za-z0-9:._-]{1,128}$")


class PushRequest(BaseModel):
    """Body of `/sync/push`; records are validated one by one by the server."""

    challenges: list[dict[str, Any]] = Field(default_factory=list)
    entries: list[dict[str, Any]] = Field(default_factory=list)
    lastSyncAt: str | None = None


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def create_app(server: SyncServer) -> FastAPI:
    """Create sync routes backed by one `SyncServer`."""

    app = FastAPI(title="Habit Build Sync API", version="0.1")

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(TRACE_HEADER) or "").strip()
        trace_id = incoming if TRACE_ID_PATTERN.match(incoming) else f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            if server.telemetry is not None:
                server.telemetry.log_event(
                    "risk.flagged",
                    source="api",
                    trace_id=trace_id,
                    data={
                        "reason": "api_internal_error",
                        "endpoint": request.url.path,
                        "error_type": exc.__class__.__name__,
                    },
                )
            response = _error(500, "Internal server error", "INTERNAL_SERVER_ERROR")
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_request(_request: Request, _exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid request body", "INVALID_REQUEST")

    def authenticate(request: Request) -> str:
        return server.authenticate(_bearer_token(request))

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": "0.1",
            "limits": {"challenges": MAX_PUSH_CHALLENGES, "entries": MAX_PUSH_ENTRIES},
        }

    @app.get("/sync/pull")
    async def pull(request: Request, since: str | None = None) -> Any:
        try:
            user_id = authenticate(request)
            return await server.pull(user_id, since)
        except AuthError as exc:
            return _error(401, exc.message, exc.code)
        except ValidationError as exc:
            return _error(400, exc.message, exc.code)
        except HabitBuildError as exc:
            return _error(500, "Failed to fetch sync data", exc.code)

    @app.post("/sync/push")
    async def push(body: PushRequest, request: Request) -> Any:
        try:
            user_id = authenticate(request)
            return await server.push(user_id, body.challenges, body.entries, body.lastSyncAt)
        except AuthError as exc:
            return _error(401, exc.message, exc.code)
        except ValidationError as exc:
            return _error(400, exc.message, exc.code)
        except HabitBuildError as exc:
            return _error(500, "Failed to sync data", exc.code)

    return app
