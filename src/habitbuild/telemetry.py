from __future__ import annotations

"""Sync and data-change event log: sanitization, JSONL persistence, summaries."""

import hashlib
import json
import re
import sys
import unicodedata
import uuid
from collections import Counter
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "sync.completed",
    "sync.partial",
    "sync.failed",
    "sync.skipped",
    "record.dropped",
    "recovery.completed",
    "recovery.skipped",
    "challenge.created",
    "challenge.updated",
    "challenge.ended",
    "entry.updated",
    "data.imported",
    "data.cleared",
    "risk.flagged",
}
VALID_SOURCES = {"cli", "api", "service"}
MAX_STRING_LENGTH = 200
RANGE_PATTERN = re.compile(r"^(\d+)([dh])$")

SECRET_VALUE_PATTERNS = [
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.]{16,}\b", re.IGNORECASE),
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"\bhb_[A-Za-z0-9]{16,}\b"),
    re.compile(
        r"\b(?=[A-Za-z0-9+/=]{40,}\b)(?=[A-Za-z0-9+/=]*[A-Z])(?=[A-Za-z0-9+/=]*[a-z])(?=[A-Za-z0-9+/=]*\d)[A-Za-z0-9+/=]{40,}\b"
    ),
]
PII_PATTERNS = [
    re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w{2,}\b"),  # email
]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _utc_now_rfc3339() -> str:
    return _utc_now().replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C"))


def is_sensitive_text(text: str) -> bool:
    return any(pattern.search(text) for pattern in (*SECRET_VALUE_PATTERNS, *PII_PATTERNS))


def _sanitize_text(value: str) -> tuple[str, bool, bool]:
    cleaned = _strip_control_chars(value).strip()
    if is_sensitive_text(cleaned):
        return "[redacted]", True, False
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", False, True
    return cleaned, False, False


def sanitize_event_data(data: Any) -> tuple[Any, dict[str, int]]:
    """Recursively redact credentials and truncate long strings.

    Returns the sanitized payload and `{"redacted": n, "truncated": n}` counts.
    """

    stats = {"redacted": 0, "truncated": 0}

    def _walk(node: Any) -> Any:
        if isinstance(node, dict):
            return {str(_walk(key)): _walk(value) for key, value in node.items()}
        if isinstance(node, (list, tuple)):
            return [_walk(item) for item in node]
        if node is None or isinstance(node, (bool, int, float)):
            return node
        text, redacted, truncated = _sanitize_text(str(node))
        stats["redacted"] += int(redacted)
        stats["truncated"] += int(truncated)
        return text

    return _walk(data), stats


def parse_range(range_value: str) -> timedelta:
    """Parse compact duration windows such as `7d` or `24h`."""

    match = RANGE_PATTERN.match(range_value.strip().lower())
    if not match:
        raise ValueError("range must be like 7d or 24h")
    amount = int(match.group(1))
    unit = match.group(2)
    if amount <= 0:
        raise ValueError("range amount must be > 0")
    if unit == "d":
        return timedelta(days=amount)
    return timedelta(hours=amount)


def hashlib_sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TelemetryLogger:
    """Append-only JSONL event logger; failures go to stderr, never to the caller."""

    def __init__(self, events_path: Path) -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_safe_json(payload))
            handle.write("\n")

    def log_event(
        self,
        event_type: str,
        *,
        source: str = "service",
        data: dict[str, Any] | None = None,
        trace_id: str | None = None,
        _emit_sanitize_flag: bool = True,
    ) -> None:
        try:
            payload = data or {}
            if event_type not in VALID_EVENT_TYPES:
                payload = {
                    "reason": "invalid_event_type",
                    "invalid_event_type_hash": hashlib_sha256_hex(event_type),
                }
                requested, event_type = event_type, "risk.flagged"
            else:
                requested = event_type
            sanitized, stats = sanitize_event_data(payload)
            self._append_jsonl(
                {
                    "schema_version": SCHEMA_VERSION,
                    "event_id": str(uuid.uuid4()),
                    "ts": _utc_now_rfc3339(),
                    "event_type": event_type,
                    "source": source if source in VALID_SOURCES else "service",
                    "trace_id": trace_id,
                    "data": sanitized,
                }
            )
            if _emit_sanitize_flag and (stats["redacted"] or stats["truncated"]):
                self.log_event(
                    "risk.flagged",
                    source=source,
                    trace_id=trace_id,
                    data={
                        "reason": "telemetry_sanitized",
                        "trigger_event_type": requested if requested in VALID_EVENT_TYPES else "unknown",
                        "fields_redacted_count": stats["redacted"],
                        "fields_truncated_count": stats["truncated"],
                    },
                    _emit_sanitize_flag=False,
                )
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    events.append(payload)
        return events

    def purge(self) -> bool:
        if not self.events_path.exists():
            return False
        self.events_path.unlink()
        return True

    def summarize(self, range_value: str = "7d") -> dict[str, Any]:
        """Aggregate sync outcomes and data changes inside a trailing window."""

        window = parse_range(range_value)
        end = _utc_now()
        start = end - window
        in_window = []
        for event in self.iter_events():
            parsed = _parse_ts(event.get("ts"))
            if parsed is not None and start <= parsed <= end:
                in_window.append(event)

        by_type = Counter(str(event.get("event_type")) for event in in_window)
        by_source = Counter(str(event.get("source", "service")) for event in in_window)
        attempts = by_type["sync.completed"] + by_type["sync.partial"] + by_type["sync.failed"]
        pushed = pulled = dropped = 0
        last_sync_at = None
        for event in in_window:
            if event.get("event_type") not in {"sync.completed", "sync.partial"}:
                continue
            data = event.get("data", {})
            pushed += int(data.get("pushed_challenges", 0)) + int(data.get("pushed_entries", 0))
            pulled += int(data.get("pulled_challenges", 0)) + int(data.get("pulled_entries", 0))
            dropped += int(data.get("dropped", 0))
            if event.get("event_type") == "sync.completed":
                last_sync_at = event.get("ts")
        failures_by_code = Counter(
            str(event.get("data", {}).get("code", "unknown"))
            for event in in_window
            if event.get("event_type") in {"sync.failed", "sync.partial"}
        )

        return {
            "schema_version": SCHEMA_VERSION,
            "generated_at": _utc_now_rfc3339(),
            "range": range_value,
            "window_start": start.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "window_end": end.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "events_considered": len(in_window),
            "events_by_type": dict(sorted(by_type.items())),
            "events_by_source": dict(sorted(by_source.items())),
            "sync_attempts": attempts,
            "sync_success_rate": round(by_type["sync.completed"] / attempts, 4) if attempts else 0.0,
            "sync_failures_by_code": dict(sorted(failures_by_code.items())),
            "records_pushed": pushed,
            "records_pulled": pulled,
            "records_dropped": dropped,
            "last_completed_sync": last_sync_at,
            "risk_flags_count": by_type["risk.flagged"],
        }
