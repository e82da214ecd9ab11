"""Timestamp helpers for SharePoint list data.

RenderListDataAsStream returns dates in two shapes depending on the field
name: ISO 8601 under ``Created.``/``Modified.`` and a locale-formatted
string under ``Created``/``Modified``. Both are parsed here.

All results are UTC-aware; naive values are assumed to be UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone

_LOCALE_FORMATS = (
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_sharepoint_date(value: str | None) -> datetime | None:
    """Parse an ISO or US-locale SharePoint date string, or return None."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in _LOCALE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def hours_between(later: datetime, earlier: datetime) -> float:
    """Signed number of hours from ``earlier`` to ``later``."""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 3600.0


__all__ = ["utc_now", "ensure_utc", "parse_sharepoint_date", "hours_between"]
