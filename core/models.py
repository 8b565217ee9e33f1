"""
Core data models for the capture platform.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .timegrid import BUSINESS_TZ, format_recorded_at


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class RawResponse(BaseModel):
    """A network response observed on the host page."""
    url: str
    payload: bytes
    observed_at: datetime = Field(default_factory=_utcnow)


class CaptureEvent(BaseModel):
    """One extraction result for one matching response."""
    source_id: str
    observed_at: datetime
    value: Optional[Union[int, float, str]] = None
    payload: Optional[Dict[str, Any]] = None
    items: Optional[List[Dict[str, Any]]] = None

    @property
    def recorded_at(self) -> str:
        return format_recorded_at(self.observed_at, self.observed_at.tzinfo or BUSINESS_TZ)


class RawRow(BaseModel):
    """A persisted row as read back from the store."""
    source_id: str
    recorded_at: str
    columns: Dict[str, Any] = Field(default_factory=dict)


class CanonicalSeries(BaseModel):
    """One metric on a fixed-length business-day grid."""
    metric_key: str
    category: str
    sub_category: str
    is_rate: bool = False
    granularity_minutes: int
    grid: List[Optional[float]]


class DaySeries(BaseModel):
    """All canonical series of one calendar date."""
    date: str
    series: List[CanonicalSeries] = Field(default_factory=list)
    # bucket label -> notes/actions recorded for that bucket
    annotations: Dict[str, List[str]] = Field(default_factory=dict)


class MergedChart(BaseModel):
    """The same metric overlaid across several dates."""
    metric_key: str
    granularity_minutes: int
    by_date: Dict[str, CanonicalSeries]


class TrendPoint(BaseModel):
    date: str
    value: Optional[float] = None


class ChartNote(BaseModel):
    chart_key: str
    point_date: str
    point_slot: str = ""
    note: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)


class DiagnosticEntry(BaseModel):
    """Entry of the diagnostic ring buffer kept in local state."""
    t: datetime = Field(default_factory=_utcnow)
    level: str = "log"  # log, warn, error
    msg: str


class LastWrite(BaseModel):
    at: datetime = Field(default_factory=_utcnow)
    bucket: str
    source_id: str
