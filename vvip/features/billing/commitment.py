"""
Minimum commitment policy.

Pure functions over (now, commitment_until). Naive datetimes are treated as UTC
so values read back from SQLite compare safely with aware timestamps.
"""
import math
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta


COMMITMENT_MONTHS = 3
SECONDS_PER_DAY = 86400


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def commitment_end(start: datetime) -> datetime:
    """End of the commitment window that starts at `start` (calendar months, clamped to month end)."""
    return as_utc(start) + relativedelta(months=COMMITMENT_MONTHS)


def is_within_commitment(now: datetime, commitment_until: Optional[datetime]) -> bool:
    if commitment_until is None:
        return False
    return as_utc(commitment_until) > as_utc(now)


def remaining_days(now: datetime, commitment_until: Optional[datetime]) -> int:
    if not is_within_commitment(now, commitment_until):
        return 0
    delta = as_utc(commitment_until) - as_utc(now)
    return max(0, math.ceil(delta.total_seconds() / SECONDS_PER_DAY))
