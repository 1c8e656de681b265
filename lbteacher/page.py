"""
Page capability surface consumed by the learning core.

The core never drives a browser directly; it works against ``PageHandle``.
``PlaywrightPage`` adapts a Playwright page to that surface and
``open_page`` is a convenience for callers that do not already own one.

Usage:
    async with open_page("https://example.com/leaderboard") as page:
        png = await page.screenshot()
        url = await page.current_url()
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Protocol

from .commands import Coordinates

logger = logging.getLogger(__name__)


class PageHandle(Protocol):
    async def screenshot(self) -> bytes:
        ...

    async def current_url(self) -> str:
        ...

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        ...

    async def click(self, selector: Optional[str] = None, coordinates: Optional[Coordinates] = None,
                    timeout: int = 5000) -> None:
        ...

    async def hover(self, selector: Optional[str] = None, coordinates: Optional[Coordinates] = None,
                    timeout: int = 5000) -> None:
        ...

    async def scroll(self, direction: str, amount: int) -> None:
        ...

    async def wait_for_selector(self, selector: str, timeout: int) -> None:
        ...

    async def wait(self, ms: int) -> None:
        ...


class PlaywrightPage:
    """PageHandle backed by a playwright.async_api.Page"""

    def __init__(self, page):
        self.page = page

    async def screenshot(self) -> bytes:
        return await self.page.screenshot(type="png", full_page=False)

    async def current_url(self) -> str:
        return self.page.url

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self.page.evaluate(script)
        return await self.page.evaluate(script, arg)

    async def click(self, selector: Optional[str] = None, coordinates: Optional[Coordinates] = None,
                    timeout: int = 5000) -> None:
        if coordinates is not None:
            await self.page.mouse.move(coordinates.x, coordinates.y)
            await self.page.mouse.click(coordinates.x, coordinates.y)
        elif selector:
            await self.page.click(selector, timeout=timeout)
        else:
            raise ValueError("click requires selector or coordinates")

    async def hover(self, selector: Optional[str] = None, coordinates: Optional[Coordinates] = None,
                    timeout: int = 5000) -> None:
        if coordinates is not None:
            await self.page.mouse.move(coordinates.x, coordinates.y)
        elif selector:
            await self.page.hover(selector, timeout=timeout)
        else:
            raise ValueError("hover requires selector or coordinates")

    async def scroll(self, direction: str, amount: int) -> None:
        delta = -amount if direction == "up" else amount
        await self.page.mouse.wheel(0, delta)

    async def wait_for_selector(self, selector: str, timeout: int) -> None:
        await self.page.wait_for_selector(selector, timeout=timeout)

    async def wait(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)


@asynccontextmanager
async def open_page(url: str, headless: bool = True, timeout: int = 30000) -> AsyncIterator[PlaywrightPage]:
    """Launch chromium, open ``url`` and yield it as a PageHandle."""
    from playwright.async_api import async_playwright

    playwright = await async_playwright().start()
    browser = await playwright.chromium.launch(
        headless=headless,
        args=[
            "--no-sandbox",
            "--disable-dev-shm-usage",
            "--disable-blink-features=AutomationControlled",
        ],
    )
    try:
        context = await browser.new_context(viewport={"width": 1920, "height": 1080})
        page = await context.new_page()
        await page.goto(url, timeout=timeout, wait_until="domcontentloaded")
        logger.info(f"Opened {url}")
        yield PlaywrightPage(page)
    finally:
        await browser.close()
        await playwright.stop()
