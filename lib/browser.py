"""Browser utilities for Playwright page fetching.

Provides a managed pool of stealth browser pages. Workers lease a page with
navigate(), read it with extract_text(), and hand it back with close().
"""

import asyncio
import re
from typing import List, Optional

from loguru import logger
from playwright.async_api import async_playwright, Browser, BrowserContext, Page
from playwright_stealth import Stealth


def html_to_text(html: str) -> str:
    """Convert HTML to plain text."""
    html = re.sub(r'<script[^>]*>.*?</script>', '', html, flags=re.DOTALL | re.IGNORECASE)
    html = re.sub(r'<style[^>]*>.*?</style>', '', html, flags=re.DOTALL | re.IGNORECASE)
    html = re.sub(r'<!--.*?-->', '', html, flags=re.DOTALL)
    text = re.sub(r'<[^>]+>', ' ', html)
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


class BrowserPool:
    """Manages a pool of browser pages shared by concurrent workers."""

    def __init__(
        self,
        concurrency: int = 3,
        headless: bool = True,
        navigation_timeout_ms: int = 18000,
        user_agent: str = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    ):
        self.concurrency = concurrency
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self.user_agent = user_agent
        self._browser: Optional[Browser] = None
        self._contexts: List[BrowserContext] = []
        self._pages: List[Page] = []
        self._free: "asyncio.Queue[Page]" = asyncio.Queue()

    async def __aenter__(self):
        """Start browser and create page pool."""
        self._stealth = Stealth()
        self._playwright = await async_playwright().start()
        await self._stealth.apply_stealth_async(self._playwright)

        self._browser = await self._playwright.chromium.launch(headless=self.headless)

        for _ in range(self.concurrency):
            ctx = await self._browser.new_context(
                user_agent=self.user_agent,
                viewport={"width": 1280, "height": 800},
                locale="it-IT",
            )
            page = await ctx.new_page()
            self._contexts.append(ctx)
            self._pages.append(page)
            self._free.put_nowait(page)

        logger.info(f"[browser] started {self.concurrency} pages (headless={self.headless})")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Clean up browser resources."""
        for ctx in self._contexts:
            await ctx.close()
        if self._browser is not None:
            await self._browser.close()
        await self._playwright.stop()

    @property
    def pages(self) -> List[Page]:
        return self._pages

    @property
    def available(self) -> int:
        return self._free.qsize()

    async def navigate(self, url: str) -> Page:
        """Lease a page and load ``url`` in it.

        Navigation errors (playwright TimeoutError, net::ERR_*) propagate after
        the page is returned to the pool, so callers can classify them.
        """
        page = await self._free.get()
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        except Exception:
            await self.close(page)
            raise
        return page

    async def extract_text(self, page: Page) -> str:
        """Visible text of the loaded document, title first."""
        html = await page.content()
        title = await page.title()
        text = html_to_text(html)
        return f"{title}\n{text}" if title else text

    async def close(self, page: Page) -> None:
        """Return a leased page to the pool."""
        try:
            await page.goto("about:blank")
        except Exception as e:
            logger.debug(f"[browser] reset failed: {e}")
        self._free.put_nowait(page)
