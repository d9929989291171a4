"""
Pytest fixtures for screenshot agent tests
"""
import base64
import json
from contextlib import asynccontextmanager

import httpx
import pytest

from screenshot_agent.config import Settings

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeSession:
    """Stands in for BrowserSession; records every call in order."""

    def __init__(self, layout=None, rect=None, page_height=0, failures=None, image=PNG_BYTES):
        self.calls = []
        self.layout = layout if layout is not None else {"cssContentSize": {"x": 0, "y": 0, "width": 1920, "height": 2400}}
        self.rect = rect if rect is not None else {"x": 10, "y": 120, "width": 800, "height": 600}
        self.page_height = page_height
        # method name -> exception to raise
        self.failures = failures or {}
        self.image = image

    def _maybe_fail(self, name):
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    async def send(self, method, params=None):
        self.calls.append((method, params or {}))
        self._maybe_fail(method)
        if method == "Page.getLayoutMetrics":
            return self.layout
        if method == "Page.captureScreenshot":
            return {"data": base64.b64encode(self.image).decode()}
        return {}

    async def navigate(self, url, *, timeout_ms):
        self.calls.append(("navigate", {"url": url}))
        self._maybe_fail("navigate")

    async def wait_for_selector(self, selector, *, state, timeout_ms):
        self.calls.append(("wait_for_selector", {"selector": selector, "state": state}))
        self._maybe_fail("wait_for_selector")

    async def wait_for_visible(self, selector, *, timeout_ms):
        self.calls.append(("wait_for_visible", {"selector": selector}))
        self._maybe_fail("wait_for_visible")

    async def scroll_into_view(self, selector, *, timeout_ms):
        self.calls.append(("scroll_into_view", {"selector": selector}))
        self._maybe_fail("scroll_into_view")

    async def evaluate(self, expression, arg=None):
        self.calls.append(("evaluate", {"arg": arg}))
        self._maybe_fail("evaluate")
        if arg is None:
            return self.page_height
        return self.rect

    def methods(self):
        return [name for name, _ in self.calls]

    def params_for(self, method):
        return [params for name, params in self.calls if name == method]


class FakeSessionFactory:
    def __init__(self, session=None, connect_error=None):
        self.session = session or FakeSession()
        self.connect_error = connect_error
        self.opened = []
        self.closed = 0

    @asynccontextmanager
    async def __call__(self, ws_url, *, timeout_ms):
        self.opened.append(ws_url)
        if self.connect_error is not None:
            raise self.connect_error
        try:
            yield self.session
        finally:
            self.closed += 1


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def session_factory(fake_session):
    return FakeSessionFactory(fake_session)


@pytest.fixture
def settings():
    return Settings(browserless_http_url="http://browserless.local:3000", browserless_http_url_is_default=False)


def discovery_transport(routes, seen=None):
    """httpx MockTransport answering ``(METHOD, path)`` with a status and JSON body."""

    def handler(request):
        key = (request.method, request.url.path)
        if seen is not None:
            seen.append(key)
        if key not in routes:
            return httpx.Response(404, text="not found")
        status, body = routes[key]
        if isinstance(body, (dict, list)):
            return httpx.Response(status, content=json.dumps(body).encode(), headers={"content-type": "application/json"})
        return httpx.Response(status, text=body)

    return httpx.MockTransport(handler)
