"""Chromium rendering engine backed by Playwright's asyncio API."""

from __future__ import annotations

from collections.abc import Sequence

from playwright.async_api import Browser, Page, Playwright, async_playwright

from deal_kernel.logging_config import get_logger

logger = get_logger("services.playwright_engine")


class PlaywrightPage:
    """One isolated browser context holding a single page."""

    def __init__(self, page: Page):
        self._page = page

    async def set_content(self, html: str, timeout_ms: float) -> None:
        await self._page.set_content(html, wait_until="networkidle", timeout=timeout_ms)

    async def pdf(self, page_format: str, margin: str) -> bytes:
        return await self._page.pdf(
            format=page_format,
            print_background=True,
            margin={"top": margin, "right": margin, "bottom": margin, "left": margin},
        )

    async def close(self) -> None:
        context = self._page.context
        await self._page.close()
        await context.close()


class PlaywrightEngine:
    """
    Headless Chromium instance.

    Bound to the event loop it was launched on; EngineManager runs every
    call on its dedicated loop thread.
    """

    def __init__(self, playwright: Playwright, browser: Browser):
        self._playwright = playwright
        self._browser = browser

    @classmethod
    async def launch(
        cls,
        headless: bool = True,
        args: Sequence[str] = ("--no-sandbox", "--disable-dev-shm-usage"),
    ) -> PlaywrightEngine:
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=headless, args=list(args))
        except BaseException:
            await playwright.stop()
            raise
        logger.info("chromium_launched", extra={"version": browser.version})
        return cls(playwright, browser)

    def is_connected(self) -> bool:
        return self._browser.is_connected()

    async def new_page(self) -> PlaywrightPage:
        context = await self._browser.new_context()
        return PlaywrightPage(await context.new_page())

    async def close(self) -> None:
        try:
            if self._browser.is_connected():
                await self._browser.close()
        finally:
            await self._playwright.stop()
