"""
Business-day time grid: timezone handling, timestamp encodings and bucketing.

Every hour/bucket semantic in the platform is defined in one fixed business
timezone (UTC+8 by default).  The tracked business day runs 09:00 -> 24:00 and
is addressed in fixed-size buckets:

* hour grid  – 60 minute buckets, 16 points labelled ``9`` .. ``24``
* fine grid  – 20 minute buckets, 46 points labelled ``09:00`` .. ``24:00``

Anything observed before the business start (in particular just after
midnight) belongs to the *previous* day's final bucket.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

DEFAULT_UTC_OFFSET_HOURS = 8.0


def business_tz(offset_hours: float = DEFAULT_UTC_OFFSET_HOURS) -> timezone:
    """Return a fixed-offset timezone for the business day."""
    return timezone(timedelta(hours=offset_hours))


BUSINESS_TZ = business_tz()


class Granularity(BaseModel):
    """Bucket layout of one business day."""

    model_config = ConfigDict(frozen=True)

    minutes: int
    start_hour: int = 9
    end_hour: int = 24

    @model_validator(mode="after")
    def _check_layout(self) -> "Granularity":
        if self.minutes <= 0:
            raise ValueError("granularity must be a positive number of minutes")
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise ValueError(f"invalid business hours {self.start_hour}..{self.end_hour}")
        if (self.end_hour - self.start_hour) * 60 % self.minutes:
            raise ValueError(f"{self.minutes} minutes does not divide the business day")
        return self

    @property
    def bucket_count(self) -> int:
        # +1: the closing bucket (24:00) is addressable on its own
        return (self.end_hour - self.start_hour) * 60 // self.minutes + 1

    @property
    def final_index(self) -> int:
        return self.bucket_count - 1

    def index_for(self, hour: int, minute: int) -> int:
        offset = (hour - self.start_hour) * 60 + minute
        return min(max(offset // self.minutes, 0), self.final_index)

    def _clock(self, index: int) -> Tuple[int, int]:
        offset = index * self.minutes
        return self.start_hour + offset // 60, offset % 60

    def label(self, index: int) -> str:
        hour, minute = self._clock(index)
        if self.minutes == 60:
            return str(hour)
        return f"{hour:02d}:{minute:02d}"

    def labels(self) -> List[str]:
        return [self.label(i) for i in range(self.bucket_count)]

    def x(self, index: int) -> float:
        """Fractional clock hour of a bucket, e.g. 9.333 for 09:20."""
        return self.start_hour + index * self.minutes / 60


HOUR_GRID = Granularity(minutes=60)
FINE_GRID = Granularity(minutes=20)

# Throttle granularities selectable at runtime
THROTTLE_OPTIONS = (10, 20, 30, 60)
DEFAULT_THROTTLE_MINUTES = 20


def granularity_for(minutes: int) -> Granularity:
    if minutes == 60:
        return HOUR_GRID
    if minutes == 20:
        return FINE_GRID
    return Granularity(minutes=minutes)


class TimeBucket(NamedTuple):
    date: str
    index: int


# --------------------------------------------------------------------------- #
# Timestamp encodings
# --------------------------------------------------------------------------- #
# "YYYY-MM-DD:HH:mm:ss" in the business timezone
_CUSTOM_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2}):(\d{2}):(\d{2}):(\d{2})$")


def parse_recorded_at(text: object, tz: timezone = BUSINESS_TZ) -> Optional[datetime]:
    """Parse either supported encoding into an aware datetime in *tz*.

    Returns ``None`` for anything that is not a valid timestamp.
    """
    if not isinstance(text, str):
        return None
    s = text.strip()
    if len(s) < 16:
        return None

    m = _CUSTOM_RE.match(s)
    if m:
        try:
            return datetime(*(int(p) for p in m.groups()), tzinfo=tz)
        except ValueError:
            return None

    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def to_business(dt: datetime, tz: timezone = BUSINESS_TZ) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def format_recorded_at(dt: datetime, tz: timezone = BUSINESS_TZ) -> str:
    """Render the fixed-width custom encoding ``YYYY-MM-DD:HH:mm:ss``."""
    return to_business(dt, tz).strftime("%Y-%m-%d:%H:%M:%S")


def to_created_at(dt: datetime, tz: timezone = BUSINESS_TZ) -> str:
    """Render the canonical ``created_at`` column, e.g. ``2024-06-01T09:05:00+08:00``."""
    return to_business(dt, tz).replace(microsecond=0).isoformat()


def to_bucket(ts: datetime, granularity: Granularity, tz: timezone = BUSINESS_TZ) -> TimeBucket:
    """Map a timestamp onto its business-day bucket.

    Clock times before the business start fold onto the previous date's
    final bucket.
    """
    local = to_business(ts, tz)
    day = local.date()
    if local.hour < granularity.start_hour:
        return TimeBucket((day - timedelta(days=1)).isoformat(), granularity.final_index)
    return TimeBucket(day.isoformat(), granularity.index_for(local.hour, local.minute))


# --------------------------------------------------------------------------- #
# Date helpers
# --------------------------------------------------------------------------- #
def business_today(tz: timezone = BUSINESS_TZ, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(tz=timezone.utc)
    return to_business(now, tz).date().isoformat()


def date_range(start: str, end: str) -> Iterator[str]:
    """Inclusive range of ISO dates."""
    day = date.fromisoformat(start)
    last = date.fromisoformat(end)
    while day <= last:
        yield day.isoformat()
        day += timedelta(days=1)


def query_window(
    start: str,
    end: str,
    tz: timezone = BUSINESS_TZ,
    start_hour: int = 9,
) -> Tuple[datetime, datetime]:
    """Store query window covering business days *start* .. *end*.

    Runs from the first day's business start up to the business start of the
    day after *end*, so post-midnight residual readings are included.
    """
    first = datetime.combine(date.fromisoformat(start), datetime.min.time(), tzinfo=tz)
    last = datetime.combine(date.fromisoformat(end), datetime.min.time(), tzinfo=tz)
    return (
        first + timedelta(hours=start_hour),
        last + timedelta(days=1, hours=start_hour),
    )
