# paani/core/clock.py
from __future__ import annotations

from datetime import datetime, timezone


def utc_naive_now() -> datetime:
    # Always UTC without tzinfo so comparisons against
    # TIMESTAMP WITHOUT TIME ZONE columns don't blow up.
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def ensure_naive_utc(dt: datetime) -> datetime:
    """Bring any datetime to naive UTC (tzinfo=None)."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def iso(dt: datetime | None) -> str | None:
    """Naive UTC → ISO-8601 with a trailing Z, the wire format of the API."""
    if dt is None:
        return None
    return dt.replace(tzinfo=None).isoformat(timespec="seconds") + "Z"


def parse_iso(raw: str) -> datetime:
    """ISO-8601 (with or without Z/offset) → naive UTC. Raises ValueError."""
    return ensure_naive_utc(datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00")))
