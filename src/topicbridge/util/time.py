from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc_iso(ts: str) -> Optional[datetime]:
    s = (ts or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[: -len("Z")] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def epoch_seconds(value: float) -> float:
    """Scale a source timestamp to epoch seconds.

    Source services report epochs in seconds, milliseconds or microseconds;
    anything past year ~5000 in seconds is assumed to be a finer unit.
    """
    v = float(value or 0)
    if v > 1e14:
        return v / 1_000_000.0
    if v > 1e11:
        return v / 1000.0
    return v
