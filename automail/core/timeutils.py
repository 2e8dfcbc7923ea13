from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_utc_or_none(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return as_utc(value)


def add_minutes(value: datetime, minutes: int) -> datetime:
    return as_utc(value) + timedelta(minutes=minutes)
