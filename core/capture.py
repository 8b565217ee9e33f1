"""
Capture agent – turns observed network responses into capture events.

The agent never modifies, delays or retries the responses it observes.  Every
failure (unknown URL, undecodable body, extractor error, nothing to extract)
simply produces no event.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union

from .interfaces import Transform
from .models import CaptureEvent, RawResponse
from .registry import MetricSource, SourceRegistry
from .timegrid import BUSINESS_TZ, to_business

logger = logging.getLogger(__name__)


class CaptureAgent(Transform):
    """Pipeline stage: ``RawResponse`` in, ``CaptureEvent`` out."""

    def __init__(self, registry: SourceRegistry, tz: timezone = BUSINESS_TZ):
        self.registry = registry
        self.tz = tz

    @property
    def name(self) -> str:
        return "CaptureAgent"

    def _event(self, source: MetricSource, extracted: Any, observed_at: datetime) -> CaptureEvent:
        event = CaptureEvent(source_id=source.id, observed_at=to_business(observed_at, self.tz))
        if source.multi_rows:
            event.items = list(extracted["items"])
        elif source.multi_value:
            event.payload = dict(extracted)
        else:
            event.value = extracted
        return event

    def observe(
        self,
        url: str,
        body: Union[bytes, str],
        observed_at: Optional[datetime] = None,
    ) -> Optional[CaptureEvent]:
        """Handle one response; returns the event or ``None``."""
        source = self.registry.match(url)
        if source is None:
            return None

        try:
            data = json.loads(body)
        except (ValueError, TypeError) as e:
            logger.debug("[%s] response body is not JSON: %s", source.id, e)
            return None

        try:
            extracted = source.extract(data)
        except Exception as e:
            logger.warning("[%s] extractor failed: %s", source.id, e)
            return None

        if extracted is None:
            logger.debug("[%s] nothing to extract from %s", source.id, url)
            return None

        if source.multi_rows and not (isinstance(extracted, dict) and extracted.get("items")):
            return None
        if source.multi_value and not source.multi_rows and not isinstance(extracted, dict):
            logger.warning("[%s] extractor returned %s, expected a record", source.id, type(extracted).__name__)
            return None

        event = self._event(source, extracted, observed_at or datetime.now(tz=timezone.utc))
        logger.debug("[%s] captured at %s", source.id, event.recorded_at)
        return event

    async def __call__(self, items: AsyncIterator[Any]) -> AsyncIterator[Any]:
        async for item in items:
            if not isinstance(item, RawResponse):
                yield item
                continue
            event = self.observe(item.url, item.payload, item.observed_at)
            if event is not None:
                yield event
