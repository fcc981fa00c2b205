"""ID generation utilities."""

from datetime import datetime
from secrets import token_hex


def new_session_id(now: datetime) -> str:
    """Create session id: YYYYMMDD_HHMMSS_<8chars>."""
    ts = now.strftime("%Y%m%d_%H%M%S")
    suffix = token_hex(4)
    return f"{ts}_{suffix}"
