from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def log_event(event: str, **fields: Any) -> str:
    return json.dumps({"event": event, **fields}, default=str)


def split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]
