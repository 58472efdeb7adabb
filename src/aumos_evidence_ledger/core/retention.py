"""Retention end-date arithmetic.

Fixed policies add calendar years, matching legal retention language
("retain for seven years"), rather than multiples of 365 days. A start date
of 29 February lands on 28 February in non-leap target years. CUSTOM adds an
explicit day count between 1 and 3650.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from aumos_evidence_ledger.core.enums import RetentionPolicy
from aumos_evidence_ledger.errors import ValidationError

MIN_CUSTOM_RETENTION_DAYS = 1
MAX_CUSTOM_RETENTION_DAYS = 3650

RETENTION_YEARS: dict[RetentionPolicy, int] = {
    RetentionPolicy.STANDARD_1_YEAR: 1,
    RetentionPolicy.STANDARD_3_YEARS: 3,
    RetentionPolicy.STANDARD_7_YEARS: 7,
}


def add_calendar_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_calendar_years(start: datetime, years: int) -> datetime:
    """Add calendar years; 29 February clamps to 28 February in common years."""
    return add_calendar_months(start, years * 12)


def compute_retention_end(
    policy: RetentionPolicy,
    start: datetime,
    retention_days: int | None = None,
) -> datetime:
    """Derive the retention end timestamp.

    Args:
        policy: Retention policy.
        start: Start of the retention period (ingestion time).
        retention_days: Day count, required for CUSTOM and ignored otherwise.

    Returns:
        The retention end timestamp, in the same timezone as start.

    Raises:
        ValidationError: INVALID_RETENTION_DAYS for a missing or out-of-range
            custom day count.
    """
    if policy == RetentionPolicy.CUSTOM:
        if (
            retention_days is None
            or isinstance(retention_days, bool)
            or not MIN_CUSTOM_RETENTION_DAYS <= retention_days <= MAX_CUSTOM_RETENTION_DAYS
        ):
            raise ValidationError.for_field(
                "INVALID_RETENTION_DAYS",
                "retention_days",
                f"CUSTOM retention requires retention_days between "
                f"{MIN_CUSTOM_RETENTION_DAYS} and {MAX_CUSTOM_RETENTION_DAYS}",
            )
        return start + timedelta(days=retention_days)

    return add_calendar_years(start, RETENTION_YEARS[policy])
