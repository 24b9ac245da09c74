from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any


def habitbuild_home() -> Path:
    configured = os.environ.get("HABITBUILD_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".habitbuild"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    telemetry = base / "telemetry"
    server = base / "server"
    for path in (base, state, telemetry, server):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "state": state, "telemetry": telemetry, "server": server}


def load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def save_json(path: Path, value: Any) -> None:
    """Write JSON through a temp file and rename, so readers never see a partial document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))
