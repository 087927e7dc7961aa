"""Enrollment pacing - spread a batch of new enrollees over several days.

Given N newly qualifying contacts and a PacingConfig, pick up to
spread_over_days send dates on allowed weekdays and hand each date a
contiguous slice of enrollee indexes.

Algorithm:
    1. Pacing disabled or nobody to enroll: no buckets
    2. Scan forward from today for 2 x spread_over_days calendar days,
       keeping allowed weekdays until spread_over_days dates are found
    3. Nothing allowed in that window: fall back to consecutive days
    4. per_day = ceil(N / dates)
    5. Day i covers [i * per_day, min((i + 1) * per_day - 1, N - 1)]

Trailing days can end up empty (start_index > end_index) when N is
smaller than the number of dates.

Usage:
    from src.engine.pacing import schedule

    for bucket in schedule(23, automation.pacing, today):
        print(bucket.date, bucket.size)
"""

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Sequence, TypeVar

from src.core.logging import get_logger
from src.db.models import PacingConfig, Weekday

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PacingBucket:
    """One send date and the enrollee index range it covers (inclusive).

    Attributes:
        date: Send date
        start_index: First enrollee index
        end_index: Last enrollee index (below start_index when empty)
    """

    date: date
    start_index: int
    end_index: int

    @property
    def size(self) -> int:
        return max(0, self.end_index - self.start_index + 1)

    @property
    def is_empty(self) -> bool:
        return self.start_index > self.end_index

    def covers(self, index: int) -> bool:
        return self.start_index <= index <= self.end_index


def valid_send_dates(pacing: PacingConfig, today: date) -> list[date]:
    """Pick the send dates for a pacing window.

    Args:
        pacing: Pacing settings
        today: First candidate date

    A one-day spread sends immediately, whatever the weekday.

    Returns:
        Up to spread_over_days dates, in order
    """
    wanted = pacing.spread_over_days
    if wanted == 1:
        return [today]

    dates: list[date] = []
    for offset in range(2 * wanted):
        candidate = today + timedelta(days=offset)
        if Weekday.from_date(candidate) in pacing.allowed_days:
            dates.append(candidate)
            if len(dates) == wanted:
                break

    if not dates:
        logger.info(
            "No allowed weekdays in pacing window, using consecutive days",
            extra={"context": {"spread_over_days": wanted}},
        )
        dates = [today + timedelta(days=offset) for offset in range(wanted)]

    return dates


def schedule(enrollee_count: int, pacing: PacingConfig, today: date) -> list[PacingBucket]:
    """Split enrollee indexes 0..N-1 across send dates.

    Args:
        enrollee_count: Number of new enrollees
        pacing: Pacing settings
        today: Scheduling date (injected, never read from the clock)

    Returns:
        One bucket per send date; empty list if pacing is off or N is 0
    """
    if not pacing.enabled or enrollee_count <= 0:
        return []

    dates = valid_send_dates(pacing, today)
    per_day = math.ceil(enrollee_count / len(dates))

    buckets = [
        PacingBucket(
            date=send_date,
            start_index=i * per_day,
            end_index=min((i + 1) * per_day - 1, enrollee_count - 1),
        )
        for i, send_date in enumerate(dates)
    ]

    logger.debug(
        "Pacing schedule built",
        extra={
            "context": {
                "enrollees": enrollee_count,
                "days": len(dates),
                "per_day": per_day,
                "first_date": dates[0].isoformat(),
            }
        },
    )
    return buckets


def assign_send_dates(items: Sequence[T], pacing: PacingConfig, today: date) -> dict[T, date]:
    """Map each enrollee to its send date.

    With pacing off everything goes out today.

    Args:
        items: Enrollee keys (contact ids) in scheduling order
        pacing: Pacing settings
        today: Scheduling date

    Returns:
        Dict of item -> send date
    """
    buckets = schedule(len(items), pacing, today)
    if not buckets:
        return {item: today for item in items}

    assigned: dict[T, date] = {}
    for bucket in buckets:
        for index in range(bucket.start_index, bucket.end_index + 1):
            assigned[items[index]] = bucket.date
    return assigned
