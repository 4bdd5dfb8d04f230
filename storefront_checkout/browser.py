"""
Browser manager — Playwright lifecycle for the page that hosts the payment form.

Single browser instance shared across checkout attempts. The payment provider
SDK runs inside the checkout page; the customer types card details into the
headed window, never into tool arguments.
"""
import logging
import os
from typing import Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)


class BrowserManager:
    """Owns one Playwright browser and the checkout tab inside it."""

    def __init__(self, headless: Optional[bool] = None):
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._checkout_page: Optional[Page] = None
        self._headless = headless

    @property
    def headless(self) -> bool:
        if self._headless is not None:
            return self._headless
        return os.environ.get("CHECKOUT_HEADLESS", "false").lower() == "true"

    @property
    def is_open(self) -> bool:
        return self._checkout_page is not None and not self._checkout_page.is_closed()

    async def _ensure_browser(self) -> Browser:
        """Launch browser if not already running."""
        if self._browser and self._browser.is_connected():
            return self._browser

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-dev-shm-usage"],
        )
        logger.info("Browser launched (headless=%s)", self.headless)
        return self._browser

    async def _ensure_context(self) -> BrowserContext:
        if self._context:
            return self._context
        browser = await self._ensure_browser()
        self._context = await browser.new_context(viewport={"width": 1280, "height": 900})
        return self._context

    async def checkout_page(self, url: str) -> Page:
        """Return the checkout tab, opening `url` in it on first use."""
        if self.is_open:
            return self._checkout_page

        context = await self._ensure_context()
        page = await context.new_page()
        await page.goto(url, wait_until="domcontentloaded", timeout=30000)
        self._checkout_page = page
        logger.info("Opened checkout page: %s", url)
        return page

    async def close(self) -> None:
        """Shut down page, context, browser and Playwright."""
        if self._checkout_page:
            try:
                await self._checkout_page.close()
            except Exception as e:
                logger.debug("Checkout page close failed: %s", e)
            self._checkout_page = None

        if self._context:
            try:
                await self._context.close()
            except Exception as e:
                logger.debug("Context close failed: %s", e)
            self._context = None

        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug("Browser close failed: %s", e)
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug("Playwright stop failed: %s", e)
            self._playwright = None

        logger.info("Browser closed")
