from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Iterator

from playwright.async_api import Browser, CDPSession, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import CdpConnectionError, CdpProtocolError, CdpTimeoutError

logger = logging.getLogger(__name__)

# Rendered at all, even with one zero dimension; the caller judges the area.
_VISIBLE_JS = """(selector) => {
    const el = document.querySelector(selector);
    return !!el && !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
}"""

_SCROLL_INTO_VIEW_JS = """(selector) => {
    const el = document.querySelector(selector);
    if (el) el.scrollIntoView({ block: "center", inline: "center" });
}"""


@contextmanager
def _translated(browser: Browser | None) -> Iterator[None]:
    """Re-raise playwright failures as typed CDP errors.

    An error raised while the browser connection is gone is a connection
    failure; anything else the browser answered with is a protocol failure.
    """
    try:
        yield
    except PlaywrightTimeoutError as exc:
        raise CdpTimeoutError(exc.message) from exc
    except PlaywrightError as exc:
        if browser is None or not browser.is_connected():
            raise CdpConnectionError(exc.message) from exc
        raise CdpProtocolError(exc.message) from exc


class BrowserSession:
    """One page on the remote browser plus a raw CDP session attached to it."""

    def __init__(self, browser: Browser, page: Page, cdp: CDPSession):
        self.browser = browser
        self.page = page
        self.cdp = cdp

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        with _translated(self.browser):
            return await self.cdp.send(method, params or {})

    async def navigate(self, url: str, *, timeout_ms: float) -> None:
        with _translated(self.browser):
            await self.page.goto(url, wait_until="load", timeout=timeout_ms)

    async def wait_for_selector(self, selector: str, *, state: str, timeout_ms: float) -> None:
        with _translated(self.browser):
            await self.page.wait_for_selector(selector, state=state, timeout=timeout_ms)

    async def wait_for_visible(self, selector: str, *, timeout_ms: float) -> None:
        with _translated(self.browser):
            await self.page.wait_for_function(_VISIBLE_JS, arg=selector, timeout=timeout_ms)

    async def scroll_into_view(self, selector: str, *, timeout_ms: float) -> None:
        with _translated(self.browser):
            await self.page.wait_for_selector(selector, state="attached", timeout=timeout_ms)
            await self.page.evaluate(_SCROLL_INTO_VIEW_JS, selector)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        with _translated(self.browser):
            return await self.page.evaluate(expression, arg)


@asynccontextmanager
async def open_session(ws_url: str, *, timeout_ms: float = 30000) -> AsyncIterator[BrowserSession]:
    """Connect to a remote browser and hold one fresh page for the caller.

    The browser context (and with it the page) is closed and the connection
    dropped on every exit path.
    """
    async with async_playwright() as p:
        with _translated(None):
            browser = await p.chromium.connect_over_cdp(ws_url, timeout=timeout_ms)
        try:
            with _translated(browser):
                # no_viewport: device metrics are driven over our own CDP session.
                context = await browser.new_context(no_viewport=True)
                page = await context.new_page()
                cdp = await context.new_cdp_session(page)
            yield BrowserSession(browser, page, cdp)
        finally:
            try:
                await browser.close()
            except PlaywrightError as exc:
                logger.warning("closing remote browser connection failed: %s", exc.message)
