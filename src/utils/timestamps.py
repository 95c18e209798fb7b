"""Timestamp helpers shared by the payment record writers."""

from datetime import UTC, datetime


def to_iso(value: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with millisecond precision and a ``Z`` suffix.

    >>> to_iso(datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC))
    '2023-11-14T22:13:20.000Z'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(datetime.now(UTC))


def utc_now_seconds() -> datetime:
    """Current UTC time truncated to whole seconds, the resolution of Stripe's ``created``."""
    return datetime.now(UTC).replace(microsecond=0)


def epoch_to_iso(epoch: int | float | str | None) -> str | None:
    """Convert a Stripe epoch-seconds value to ISO-8601; invalid or missing input yields None.

    >>> epoch_to_iso(1700000000)
    '2023-11-14T22:13:20.000Z'
    """
    if epoch is None or isinstance(epoch, bool):
        return None
    try:
        seconds = float(epoch)
    except (TypeError, ValueError):
        return None
    try:
        return to_iso(datetime.fromtimestamp(seconds, tz=UTC))
    except (OverflowError, OSError, ValueError):
        return None


def epoch_to_datetime(epoch: int | float | None) -> datetime | None:
    if epoch is None or isinstance(epoch, bool):
        return None
    try:
        return datetime.fromtimestamp(float(epoch), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string as written by PostgREST or to_iso(); None on failure."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
