from __future__ import annotations

"""`config.yaml` loading with schema validation and environment overrides."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator


CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "api_base_url": {"type": "string", "pattern": r"^https?://"},
        "request_timeout_seconds": {"type": "number", "exclusiveMinimum": 0, "maximum": 300},
        "sync_min_interval_seconds": {"type": "number", "minimum": 0},
        "storage_backend": {"enum": ["json", "sqlite"]},
        "cache_ttl_seconds": {"type": "number", "minimum": 0},
        "server_tokens_file": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}
_VALIDATOR = Draft202012Validator(CONFIG_SCHEMA)

ENV_OVERRIDES = {
    "HABITBUILD_API_URL": ("api_base_url", str),
    "HABITBUILD_TIMEOUT_SECONDS": ("request_timeout_seconds", float),
    "HABITBUILD_STORAGE": ("storage_backend", str),
}


@dataclass(frozen=True)
class Config:
    home: Path
    api_base_url: str = "http://127.0.0.1:8000"
    request_timeout_seconds: float = 10.0
    sync_min_interval_seconds: float = 60.0
    storage_backend: str = "json"
    cache_ttl_seconds: float = 300.0
    server_tokens_file: str = "server/tokens.yaml"

    @property
    def state_dir(self) -> Path:
        return self.home / "state"

    @property
    def events_path(self) -> Path:
        return self.home / "telemetry" / "events.jsonl"

    @property
    def account_path(self) -> Path:
        return self.state_dir / "account.json"

    @property
    def store_path(self) -> Path:
        name = "replica.sqlite3" if self.storage_backend == "sqlite" else "replica.json"
        return self.state_dir / name

    @property
    def tokens_path(self) -> Path:
        path = Path(self.server_tokens_file).expanduser()
        return path if path.is_absolute() else self.home / path


def _validate(payload: Any, source: str) -> None:
    errors = sorted(_VALIDATOR.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Config validation failed for {source} at {where}: {first.message}")


def load_config(home: Path, environ: dict[str, str] | None = None) -> Config:
    """Merge defaults, `home/config.yaml`, then `HABITBUILD_*` variables."""

    env = os.environ if environ is None else environ
    path = home / "config.yaml"
    values: dict[str, Any] = {}
    if path.exists():
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ValueError(f"Config file is not valid YAML: {path}") from exc
        if payload is not None:
            if not isinstance(payload, dict):
                raise ValueError(f"Config file must be a mapping: {path}")
            _validate(payload, str(path))
            values.update(payload)

    overrides: dict[str, Any] = {}
    for variable, (key, convert) in ENV_OVERRIDES.items():
        raw = env.get(variable)
        if raw is None or not raw.strip():
            continue
        try:
            overrides[key] = convert(raw.strip())
        except ValueError as exc:
            raise ValueError(f"{variable} is not a valid {key}: {raw}") from exc
    if overrides:
        _validate(overrides, "environment")
        values.update(overrides)

    return Config(home=home, **values)
