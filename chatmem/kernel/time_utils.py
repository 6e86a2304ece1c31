from datetime import datetime, timezone


def utc_now_iso(timespec: str = "microseconds") -> str:
    """Return current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec=timespec)


def parse_ts(ts: str | None) -> float:
    """Parse an ISO or SQLite timestamp to epoch seconds (0.0 when absent)."""
    if not ts:
        return 0.0
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
