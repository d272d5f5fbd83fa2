from __future__ import annotations

import sys
from datetime import UTC, datetime
from typing import Any

import orjson


def log_json(payload: dict[str, Any]) -> None:
    line = {"ts": datetime.now(UTC).isoformat(), **payload}
    try:
        sys.stdout.write(orjson.dumps(line, default=str).decode("utf-8") + "\n")
        sys.stdout.flush()
    except (TypeError, ValueError, OSError):
        pass


def log_event(event: str, *, level: str = "info", **fields: Any) -> None:
    log_json({"level": level, "event": event, **fields})
