"""Query window planning — turns a watermark and a trigger time into windows.

Pure functions, no I/O. A fetch cycle calls ``plan_window`` repeatedly,
feeding each window's ``end`` back in as the next watermark, until the
planner returns ``None`` (caught up with the trigger time).
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

DEFAULT_FILTER_FIELD = "alertCreationTime"

# The API refuses queries reaching back further than 30 days.
DEFAULT_MAX_LOOK_BEHIND = timedelta(days=30) - timedelta(seconds=1)


def format_odata_time(value: datetime) -> str:
    """Render ``value`` in UTC as ``YYYY-MM-DDTHH:MM:SS[.fffff]Z``.

    Up to five fractional digits, truncated, trailing zeros trimmed.
    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    frac = f"{value.microsecond // 10:05d}".rstrip("0")
    base = value.strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{frac}Z" if frac else f"{base}Z"


@dataclass(frozen=True)
class QueryWindow:
    """Half-open time range ``(start, end]``."""

    start: datetime
    end: datetime

    @property
    def span(self) -> timedelta:
        return self.end - self.start

    def filter_expression(self, field: str = DEFAULT_FILTER_FIELD) -> str:
        return (
            f"{field} gt {format_odata_time(self.start)} "
            f"and {field} le {format_odata_time(self.end)}"
        )


def plan_window(
    watermark: datetime | None,
    trigger: datetime,
    max_interval: timedelta,
    max_look_behind: timedelta = DEFAULT_MAX_LOOK_BEHIND,
) -> QueryWindow | None:
    """Plan the next query window, or return ``None`` when caught up.

    - an unset watermark bootstraps one ``max_interval`` before ``trigger``
    - a start older than ``max_look_behind`` is clipped (older data is skipped)
    - a span wider than ``max_interval`` is cut to ``max_interval``
    """
    start = watermark if watermark is not None else trigger - max_interval
    if trigger - start <= timedelta(0):
        return None

    if trigger - start > max_look_behind:
        start = trigger - max_look_behind

    end = trigger
    if end - start > max_interval:
        end = start + max_interval
    return QueryWindow(start=start, end=end)


def iter_windows(
    watermark: datetime | None,
    trigger: datetime,
    max_interval: timedelta,
    max_look_behind: timedelta = DEFAULT_MAX_LOOK_BEHIND,
) -> Iterator[QueryWindow]:
    """Yield every window needed to catch up from ``watermark`` to ``trigger``."""
    while True:
        window = plan_window(watermark, trigger, max_interval, max_look_behind)
        if window is None:
            return
        yield window
        watermark = window.end
