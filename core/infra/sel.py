"""
sel.py - Async Playwright helpers for long-lived, logged-in browser sessions.

Key points
----------
* persistent profile (``user_data_dir``) so a manual login survives restarts
* ``keep_visible`` init script pins ``document.hidden`` / ``visibilityState`` so
  pages keep polling while they sit in a background tab
* context-wide response listeners: every response of every page is reported
  without being modified
* async context-manager support:
    async with PlaywrightClient(user_data_dir="profile") as pw:
        page = await pw.new_page()
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, Dict, List, Optional, Sequence, Type

try:
    from playwright.async_api import (
        async_playwright,
        BrowserContext,
        BrowserType,
        Error as PlaywrightError,
        Page,
        Response,
    )
except ImportError as e:  # pragma: no cover
    raise ImportError(
        "Package 'playwright' is required.  Install with:  pip install playwright"
    ) from e

logger = logging.getLogger(__name__)

KEEP_VISIBLE_SCRIPT = """
try {
  Object.defineProperty(document, 'hidden', { get: () => false, configurable: true });
  Object.defineProperty(document, 'visibilityState', { get: () => 'visible', configurable: true });
} catch (e) {
  console.warn('visibility override failed', e);
}
"""


class PlaywrightClient:
    """
    Thin wrapper around a persistent Playwright browser context.

    Examples
    --------
    async with PlaywrightClient(headless=False) as pw:
        pw.on_response(handler)
        await pw.open_pages(["https://example.com"])
    """

    def __init__(
        self,
        *,
        user_data_dir: str = "profile",
        headless: bool = False,
        browser_type: str = "chromium",
        timeout: float = 30_000,
        keep_visible: bool = True,
        extra_context_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.user_data_dir = Path(user_data_dir)
        self.headless = headless
        self.browser_type = browser_type.lower()
        self.timeout = timeout
        self.keep_visible = keep_visible
        self._context_kwargs = extra_context_kwargs or {}

        # Internal Playwright handles
        self._playwright = None
        self._context: Optional[BrowserContext] = None
        self._listeners: List[Callable[[Response], Any]] = []

    # --------------------------------------------------------------------- #
    # Async context-manager sugar
    async def __aenter__(self) -> "PlaywrightClient":  # noqa: D401
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.stop()

    # --------------------------------------------------------------------- #
    # Lifecycle helpers
    async def start(self) -> None:
        """Launch the persistent context if not already started."""
        if self._context:
            return

        self._playwright = await async_playwright().start()
        browser_launcher: BrowserType

        if self.browser_type == "chromium":
            browser_launcher = self._playwright.chromium
        elif self.browser_type == "firefox":
            browser_launcher = self._playwright.firefox
        elif self.browser_type == "webkit":
            browser_launcher = self._playwright.webkit
        else:  # pragma: no cover
            raise ValueError(f"Unsupported browser type: {self.browser_type}")

        self.user_data_dir.mkdir(parents=True, exist_ok=True)
        self._context = await browser_launcher.launch_persistent_context(
            str(self.user_data_dir),
            headless=self.headless,
            ignore_https_errors=True,
            **self._context_kwargs,
        )
        if self.keep_visible:
            await self._context.add_init_script(KEEP_VISIBLE_SCRIPT)
        for listener in self._listeners:
            self._context.on("response", listener)

        logger.info(
            "Playwright started: %s (headless=%s, profile=%s)",
            self.browser_type,
            self.headless,
            self.user_data_dir,
        )

    async def stop(self) -> None:
        """Gracefully close context & Playwright."""
        if self._context:
            try:
                await self._context.close()
            except PlaywrightError as e:
                logger.debug("Context already closed: %s", e)
            self._context = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Playwright stopped")

    # --------------------------------------------------------------------- #
    # Page helpers
    def on_response(self, listener: Callable[[Response], Any]) -> None:
        """Report every response of every page of the context to *listener*."""
        self._listeners.append(listener)
        if self._context:
            self._context.on("response", listener)

    async def new_page(self) -> Page:
        """Return a fresh Page with sane defaults."""
        if not self._context:
            await self.start()
        page = await self._context.new_page()
        page.set_default_timeout(self.timeout)
        return page

    async def open_pages(self, urls: Sequence[str]) -> List[Page]:
        """Open one tab per URL; navigation failures are logged, not raised."""
        pages = []
        for url in urls:
            page = await self.new_page()
            try:
                await page.goto(url, wait_until="domcontentloaded")
            except PlaywrightError as e:
                logger.warning("Opening %s failed: %s", url, e)
            pages.append(page)
        return pages
