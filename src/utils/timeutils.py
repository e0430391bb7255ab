from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def align_to_slot(value: datetime, slot_minutes: int) -> datetime:
    """Floor ``value`` to the start of its ``slot_minutes`` slot."""
    aligned_minute = (value.minute // slot_minutes) * slot_minutes
    return value.replace(minute=aligned_minute, second=0, microsecond=0)


def whole_minutes(delta: timedelta) -> int:
    """Minutes in ``delta``, truncated toward zero."""
    return int(delta.total_seconds() / 60)
