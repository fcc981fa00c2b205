from __future__ import annotations

import time
from datetime import datetime


def now_iso() -> str:
    """Return timezone-aware current local time in ISO format."""
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def elapsed_sec(started: float) -> float:
    """Seconds since a ``time.monotonic()`` reading, rounded to milliseconds."""
    return round(time.monotonic() - started, 3)
