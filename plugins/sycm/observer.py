"""
Page observer – feeds the capture pipeline with the host pages' own responses.

The observer never issues requests of its own: it opens the analytics pages in
a persistent browser profile and copies every JSON response the pages receive
into an :class:`asyncio.Queue`.  Responses the registry does not know are
dropped before their body is read.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Sequence

from core.infra.sel import PlaywrightClient, PlaywrightError, Response
from core.interfaces import Fetcher
from core.models import RawResponse
from core.registry import SourceRegistry

from .sources import page_urls

logger = logging.getLogger(__name__)


class PageObserver(Fetcher):
    """Yields :class:`RawResponse` for every matching response until stopped."""

    name = "PageObserver"

    def __init__(
        self,
        registry: SourceRegistry,
        *,
        urls: Optional[Sequence[str]] = None,
        user_data_dir: str = "profile",
        headless: bool = False,
        queue_size: int = 1000,
        client: Optional[PlaywrightClient] = None,
    ):
        self.registry = registry
        self.urls = list(urls) if urls is not None else page_urls()
        self.browser = client or PlaywrightClient(user_data_dir=user_data_dir, headless=headless)
        self.queue: "asyncio.Queue[Optional[RawResponse]]" = asyncio.Queue(maxsize=queue_size)
        self._tasks = set()

    async def _read(self, response: Response) -> None:
        observed_at = datetime.now(tz=timezone.utc)
        try:
            body = await response.body()
        except PlaywrightError as e:
            logger.debug("Body of %s unavailable: %s", response.url, e)
            return
        item = RawResponse(url=response.url, payload=body, observed_at=observed_at)
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Observer queue full, dropping response from %s", response.url)

    def _on_response(self, response: Response) -> None:
        if self.registry.match(response.url) is None:
            return
        task = asyncio.create_task(self._read(response))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def stop(self) -> None:
        """Ends the :meth:`fetch` stream once queued responses are consumed."""
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            logger.warning("Observer queue full, stop signal will wait")
            asyncio.get_running_loop().create_task(self.queue.put(None))

    async def fetch(self) -> AsyncIterator[RawResponse]:
        self.browser.on_response(self._on_response)
        async with self.browser:
            await self.browser.open_pages(self.urls)
            logger.info("Observing %d page(s) for %d source(s)", len(self.urls), len(self.registry))
            while True:
                item = await self.queue.get()
                if item is None:
                    break
                yield item
        logger.info("Observer stopped")
