# backend/recon/services/browser_pool.py
"""
Shared headless browser with bounded page leases

One persistent Chromium context is launched at pipeline start and shared by
every scraping job. Each job leases a page through page(), which guarantees
the page is closed and the slot released on every exit path.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from recon.errors import BrowserUnavailable

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--ignore-certificate-errors",
    "--disable-blink-features=AutomationControlled",
]

ContextFactory = Callable[[], Awaitable[Any]]


class BrowserPool:
    """
    Usage:
        pool = BrowserPool(max_pages=3, user_data_dir="./user_data")
        await pool.start()
        async with pool.page() as page:
            await page.goto(url)
        await pool.close()
    """

    def __init__(
        self,
        max_pages: int = 3,
        headless: bool = True,
        user_data_dir: str = "./user_data",
        user_agent: Optional[str] = None,
        context_factory: Optional[ContextFactory] = None
    ):
        self.max_pages = max_pages
        self.headless = headless
        self.user_data_dir = user_data_dir
        self.user_agent = user_agent
        self._context_factory = context_factory

        self._playwright = None
        self._context = None
        self._semaphore = asyncio.Semaphore(max_pages)
        self._closed = False
        self.open_pages = 0
        self.peak_pages = 0

    @classmethod
    def from_settings(cls, settings, context_factory: Optional[ContextFactory] = None) -> "BrowserPool":
        return cls(
            max_pages=settings.SCRAPE_CONCURRENCY,
            headless=settings.BROWSER_HEADLESS,
            user_data_dir=settings.BROWSER_USER_DATA_DIR,
            user_agent=settings.BROWSER_USER_AGENT,
            context_factory=context_factory,
        )

    @property
    def is_running(self) -> bool:
        return self._context is not None and not self._closed

    async def start(self) -> None:
        """Launch the shared browser; any failure here is fatal to startup"""
        if self._context is not None:
            return

        try:
            if self._context_factory is not None:
                self._context = await self._context_factory()
            else:
                self._context = await self._launch()
        except Exception as e:
            logger.error(f"Failed to launch browser: {e}")
            await self._stop_playwright()
            raise BrowserUnavailable(f"Browser launch failed: {e}") from e

        self._closed = False
        logger.info(f"Browser started (max {self.max_pages} pages, headless={self.headless})")

    async def _launch(self):
        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch_persistent_context(
            self.user_data_dir,
            headless=self.headless,
            args=LAUNCH_ARGS,
            ignore_default_args=["--enable-automation"],
            ignore_https_errors=True,
            user_agent=self.user_agent,
            no_viewport=True,
        )

    async def acquire(self):
        """Wait for a free slot and open a new page"""
        if not self.is_running:
            raise BrowserUnavailable("Browser is not running")

        await self._semaphore.acquire()
        try:
            if not self.is_running:
                raise BrowserUnavailable("Browser closed while waiting for a page")
            page = await self._context.new_page()
        except Exception:
            self._semaphore.release()
            raise

        page.on("dialog", _dismiss_dialog)
        self.open_pages += 1
        self.peak_pages = max(self.peak_pages, self.open_pages)
        return page

    async def release(self, page) -> None:
        try:
            await page.close()
        except Exception as e:
            # Closed together with the browser during shutdown
            logger.debug(f"Page close failed: {e}")
        finally:
            self.open_pages -= 1
            self._semaphore.release()

    @asynccontextmanager
    async def page(self):
        page = await self.acquire()
        try:
            yield page
        finally:
            await self.release(page)

    async def close(self) -> None:
        """Close the browser; in-flight page operations fail fast afterwards"""
        if self._closed:
            return
        self._closed = True

        if self._context is not None:
            try:
                await self._context.close()
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
            self._context = None

        await self._stop_playwright()
        logger.info("Browser closed")

    async def _stop_playwright(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None


async def _dismiss_dialog(dialog) -> None:
    try:
        await dialog.dismiss()
    except Exception as e:
        logger.debug(f"Could not dismiss dialog: {e}")
