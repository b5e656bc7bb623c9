"""Frequency to next-due-date arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from dateutil.relativedelta import relativedelta

from inspectra.core.errors import ValidationError

# relativedelta clamps the day to the target month length (Jan 31 + 1 month -> Feb 28/29)
FREQUENCY_OFFSETS: dict[str, timedelta | relativedelta | None] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
    "annual": relativedelta(years=1),
    "every_3_years": relativedelta(years=3),
    "as_needed": None,
}

FREQUENCIES = tuple(FREQUENCY_OFFSETS)


def next_due_date(frequency: str, reference: datetime | None = None) -> datetime | None:
    """Return the next due instant for ``frequency`` counted from ``reference``.

    ``reference`` defaults to the current UTC time. ``as_needed`` templates
    are never scheduled automatically and yield ``None``.

    Raises:
        ValidationError: If the frequency is not recognised
    """
    if frequency not in FREQUENCY_OFFSETS:
        raise ValidationError(f"Unknown frequency: {frequency!r}")

    offset = FREQUENCY_OFFSETS[frequency]
    if offset is None:
        return None

    if reference is None:
        reference = datetime.now(timezone.utc)
    elif reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)

    return reference + offset
