from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional


@dataclass(frozen=True)
class Window:
    slug: str
    start: datetime
    end: Optional[datetime]


def end_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.max)


def resolve_window(
    days: Optional[int],
    start: Optional[datetime],
    end: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> Window:
    """Turn a bulk-delete request into concrete bounds.

    ``days`` selects everything dated on or after ``now - days``; a
    ``start``/``end`` pair is inclusive and covers the whole ``end`` day.
    """
    if days is not None:
        if start is not None or end is not None:
            raise ValueError("Provide either days or from/to, not both")
        if days <= 0:
            raise ValueError("days must be positive")
        now = now or datetime.utcnow()
        return Window("days", now - timedelta(days=days), None)
    if start is None or end is None:
        raise ValueError("Provide either days or both from and to dates")
    end_bound = end_of_day(end)
    if start > end_bound:
        raise ValueError("from must be on or before to")
    return Window("range", start, end_bound)
