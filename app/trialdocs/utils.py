from __future__ import annotations

from datetime import date, datetime, timezone

from app.trialdocs.errors import ValidationError


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_date(value: str | date | None, *, field: str = "date") -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    # Clients send either YYYY-MM-DD or a full ISO timestamp.
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as e:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD).", field=field, value=raw) from e


def parse_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer.", field=field)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an integer.", field=field) from e


def clean_text(value: str | None) -> str:
    return (value or "").strip()


def optional_text(value: object, *, field: str) -> str | None:
    """JSON field that must be a string when present."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.", field=field)
    return value
