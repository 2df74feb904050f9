import time
from datetime import datetime, timezone
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def coerce_qty(value: Any) -> int:
    """Form quantities: anything that isn't a non-negative integer is 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    try:
        n = int(str(value).strip())
    except ValueError:
        # "12.0" and friends; the form input is type=number
        try:
            n = int(float(str(value).strip()))
        except (ValueError, OverflowError):
            return 0
    return max(0, n)


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
