"""UTC timestamp helpers. Timestamps are stored as ISO 8601 strings with a Z suffix."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return to_iso(datetime.now(UTC))


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def add_seconds(base_timestamp: str | None, seconds: int) -> str | None:
    """Compute a deadline by adding seconds to a base ISO timestamp."""
    if base_timestamp is None:
        return None
    return to_iso(parse_iso(base_timestamp) + timedelta(seconds=seconds))


def is_past(deadline: str | None, now: datetime | None = None) -> bool:
    """True when the deadline exists and ``now`` is strictly after it."""
    if deadline is None:
        return False
    current = now if now is not None else datetime.now(UTC)
    return current > parse_iso(deadline)
