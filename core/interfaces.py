"""
Core interfaces for the capture platform.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from .models import RawResponse


class Transform(ABC):
    """Universal transform interface for pipeline stages.

    Any stage in a capture pipeline implements this interface: it consumes an
    async iterator and yields another one.
    """

    @abstractmethod
    async def __call__(
        self, items: AsyncIterator[Any]
    ) -> AsyncIterator[Any]:
        """Transform an async iterator of items to another async iterator."""
        ...


class Fetcher(Transform):
    """Abstract base class for response sources.

    Fetchers ignore their input and yield observed responses.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this fetcher."""
        pass

    @abstractmethod
    async def fetch(self) -> AsyncIterator[RawResponse]:
        """Yield observed responses."""
        pass

    async def __call__(self, items: AsyncIterator[Any]) -> AsyncIterator[RawResponse]:
        """Transform interface: ignore input stream and yield fetched items."""
        async for item in items:
            async for raw_item in self.fetch():
                yield raw_item
            break  # the seed item only triggers fetching


class Sink(Transform):
    """Abstract base class for sinks.

    Sinks consume items and yield them unchanged.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this sink."""
        pass

    @abstractmethod
    async def handle(self, item: Any) -> Any:
        """Handle an item."""
        pass

    async def __call__(self, items: AsyncIterator[Any]) -> AsyncIterator[Any]:
        """Transform interface: handle items and pass them through."""
        async for item in items:
            await self.handle(item)
            yield item


class RowStore(ABC):
    """Row-oriented persistent store.

    Write methods return ``True`` once the store acknowledged the write and
    ``False`` otherwise; they never raise for store-side failures.
    """

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> bool:
        ...

    @abstractmethod
    async def insert_many(self, table: str, rows: Sequence[Mapping[str, Any]]) -> bool:
        ...

    @abstractmethod
    async def select(
        self,
        table: str,
        since: datetime,
        until: datetime,
        *,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Rows of *table* whose ``created_at`` lies in ``[since, until)``."""
        ...

    @abstractmethod
    async def upsert(
        self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]
    ) -> bool:
        ...

    @abstractmethod
    async def select_where(
        self, table: str, filters: Mapping[str, Sequence[Any]]
    ) -> List[Dict[str, Any]]:
        """Rows of *table* where every filtered column is one of the given values."""
        ...

    async def close(self) -> None:
        pass


class KeyValueStore(ABC):
    """Local key-value state (bucket markers, settings, diagnostics)."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    async def close(self) -> None:
        pass
