from __future__ import annotations

import asyncio
import base64
import logging
import math
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Callable, ClassVar

from .cdp import BrowserSession, open_session
from .config import Settings
from .errors import (
    CaptureError,
    CdpProtocolError,
    DialError,
    Outcome,
    ResolutionError,
    ScreenshotError,
)
from .models import CapturedImage, Clip, ClipRect, Viewport
from .resolver import EndpointResolver
from .validator import CanonicalRequest

logger = logging.getLogger(__name__)

# Only covers opening the session and the first CDP round trip; later phases
# share whatever is left of the request timeout.
DIAL_TIMEOUT_S = 30.0

# Upper bound for auto-expanded viewports on very long pages.
MAX_AUTO_VIEWPORT_HEIGHT = 30000

SessionFactory = Callable[..., AsyncContextManager[BrowserSession]]

_PAGE_HEIGHT_JS = """() => {
    const de = document.documentElement;
    const b = document.body;
    return Math.max(
        de ? de.scrollHeight : 0,
        de ? de.offsetHeight : 0,
        b ? b.scrollHeight : 0,
        b ? b.offsetHeight : 0
    );
}"""

_ELEMENT_RECT_JS = """(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const r = el.getBoundingClientRect();
    return { x: r.x + window.scrollX, y: r.y + window.scrollY, width: r.width, height: r.height };
}"""


@dataclass
class CaptureRun:
    """Mutable state threaded through the steps of one capture."""

    session: BrowserSession
    viewport: Viewport
    deadline: float
    clip: ClipRect | None = None
    image: bytes | None = None

    def remaining_ms(self) -> float:
        left = self.deadline - asyncio.get_running_loop().time()
        # playwright treats 0 as "no timeout"
        return max(1.0, left * 1000)


def _content_size(metrics: dict[str, Any]) -> dict[str, Any] | None:
    return metrics.get("cssContentSize") or metrics.get("contentSize")


class Step:
    phase: ClassVar[str] = "step"

    async def run(self, run: CaptureRun) -> None:
        raise NotImplementedError


@dataclass
class Configure(Step):
    phase: ClassVar[str] = "configure"
    user_agent: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    async def run(self, run: CaptureRun) -> None:
        await run.session.send("Network.enable")
        await run.session.send("Emulation.setDeviceMetricsOverride", run.viewport.as_device_metrics())
        if self.user_agent:
            await run.session.send("Emulation.setUserAgentOverride", {"userAgent": self.user_agent})
        if self.headers:
            await run.session.send("Network.setExtraHTTPHeaders", {"headers": dict(self.headers)})


@dataclass
class Navigate(Step):
    phase: ClassVar[str] = "navigate"
    url: str

    async def run(self, run: CaptureRun) -> None:
        await run.session.navigate(self.url, timeout_ms=run.remaining_ms())
        await run.session.wait_for_selector("body", state="attached", timeout_ms=run.remaining_ms())


@dataclass
class WaitFor(Step):
    phase: ClassVar[str] = "wait_for"
    selector: str

    async def run(self, run: CaptureRun) -> None:
        await run.session.wait_for_visible(self.selector, timeout_ms=run.remaining_ms())


@dataclass
class Settle(Step):
    phase: ClassVar[str] = "settle"
    wait_ms: int

    async def run(self, run: CaptureRun) -> None:
        await asyncio.sleep(self.wait_ms / 1000)


@dataclass
class AutoExpand(Step):
    """Grow the viewport to the page height before an element capture."""

    phase: ClassVar[str] = "auto_expand"
    ceiling: int = MAX_AUTO_VIEWPORT_HEIGHT

    async def measure(self, run: CaptureRun) -> float:
        try:
            size = _content_size(await run.session.send("Page.getLayoutMetrics"))
        except CdpProtocolError as exc:
            logger.debug("layout metrics unavailable, measuring through the DOM: %s", exc)
            size = None
        if size and size.get("height", 0) > 0:
            return float(size["height"])
        return float(await run.session.evaluate(_PAGE_HEIGHT_JS) or 0)

    async def run(self, run: CaptureRun) -> None:
        page_height = await self.measure(run)
        if page_height <= 0:
            raise CaptureError("failed to determine page height")

        desired = max(math.ceil(page_height), run.viewport.height)
        desired = min(desired, self.ceiling)
        if desired != run.viewport.height:
            logger.debug("expanding viewport height %d -> %d", run.viewport.height, desired)
            run.viewport.height = desired
            await run.session.send("Emulation.setDeviceMetricsOverride", run.viewport.as_device_metrics())


@dataclass
class ResolveClip(Step):
    phase: ClassVar[str] = "resolve_clip"
    selector: str = ""
    full_page: bool = False
    clip: Clip | None = None

    @property
    def strategy(self) -> str:
        if self.selector:
            return "selector"
        if self.full_page and self.clip is None:
            return "full_page"
        if self.clip is not None:
            return "explicit"
        return "viewport"

    async def run(self, run: CaptureRun) -> None:
        strategy = self.strategy
        if strategy == "selector":
            run.clip = await self._selector_clip(run)
        elif strategy == "full_page":
            run.clip = await self._full_page_clip(run)
        elif strategy == "explicit":
            run.clip = ClipRect.from_clip(self.clip)
        else:
            run.clip = None

    async def _selector_clip(self, run: CaptureRun) -> ClipRect:
        await run.session.scroll_into_view(self.selector, timeout_ms=run.remaining_ms())
        await run.session.wait_for_visible(self.selector, timeout_ms=run.remaining_ms())
        rect = await run.session.evaluate(_ELEMENT_RECT_JS, self.selector)
        if not rect or rect.get("width", 0) <= 0 or rect.get("height", 0) <= 0:
            raise CaptureError(f"selector resolved but has empty bounding box: {self.selector}")
        return ClipRect(x=rect["x"], y=rect["y"], width=rect["width"], height=rect["height"])

    async def _full_page_clip(self, run: CaptureRun) -> ClipRect:
        size = _content_size(await run.session.send("Page.getLayoutMetrics"))
        if not size:
            raise CaptureError("failed to get layout metrics content size")
        width = size.get("width", 0)
        height = size.get("height", 0)
        if width <= 0 or height <= 0:
            raise CaptureError(f"invalid content size: {width}x{height}")
        return ClipRect(x=0, y=0, width=width, height=height)


@dataclass
class Capture(Step):
    phase: ClassVar[str] = "capture"
    format: str = "png"
    quality: int = 90
    beyond_viewport: bool = False

    def params(self, clip: ClipRect | None) -> dict[str, Any]:
        params: dict[str, Any] = {"format": self.format, "fromSurface": True}
        if self.beyond_viewport:
            params["captureBeyondViewport"] = True
        if self.format in ("jpeg", "webp"):
            params["quality"] = self.quality
        if clip is not None:
            params["clip"] = clip.as_cdp()
        return params

    async def run(self, run: CaptureRun) -> None:
        result = await run.session.send("Page.captureScreenshot", self.params(run.clip))
        run.image = base64.b64decode(result["data"])


def build_plan(canonical: CanonicalRequest) -> list[Step]:
    req = canonical.request
    steps: list[Step] = [
        Configure(user_agent=req.user_agent, headers=dict(req.headers or {})),
        Navigate(url=req.url),
    ]
    if req.wait_for:
        steps.append(WaitFor(selector=req.wait_for))
    if req.wait_time > 0:
        steps.append(Settle(wait_ms=req.wait_time))
    if canonical.auto_expand:
        steps.append(AutoExpand())
    steps.append(ResolveClip(selector=req.selector, full_page=req.full_page, clip=req.clip))
    steps.append(
        Capture(
            format=req.format,
            quality=req.quality,
            beyond_viewport=req.full_page and not req.selector and req.clip is None,
        )
    )
    return steps


class CaptureOrchestrator:
    def __init__(self, canonical: CanonicalRequest, *, session_factory: SessionFactory = open_session):
        self.canonical = canonical
        self.plan = build_plan(canonical)
        self.viewport = canonical.new_viewport()
        self.phase = "dial"
        self._session_factory = session_factory

    async def run(self, ws_url: str, deadline: float) -> CapturedImage:
        """Dial ``ws_url`` and execute the plan, all before ``deadline`` (loop time)."""
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(self._run(ws_url, deadline), timeout=max(0.0, remaining))
        except asyncio.TimeoutError:
            timeout_s = self.canonical.request.timeout
            if self.phase == "dial":
                raise DialError(f"request timeout ({timeout_s}s) exceeded while dialing", Outcome.TIMEOUT) from None
            raise CaptureError(
                f"request timeout ({timeout_s}s) exceeded during {self.phase}", Outcome.TIMEOUT
            ) from None

    async def _dial(self, stack: AsyncExitStack, ws_url: str) -> BrowserSession:
        session = await stack.enter_async_context(
            self._session_factory(ws_url, timeout_ms=DIAL_TIMEOUT_S * 1000)
        )
        # read-only round trip to force the handshake and session setup
        await session.send("Page.getFrameTree")
        return session

    async def _run(self, ws_url: str, deadline: float) -> CapturedImage:
        async with AsyncExitStack() as stack:
            self.phase = "dial"
            try:
                session = await asyncio.wait_for(self._dial(stack, ws_url), timeout=DIAL_TIMEOUT_S)
            except asyncio.TimeoutError:
                raise DialError(f"dial did not complete within {DIAL_TIMEOUT_S:g}s", Outcome.TIMEOUT) from None
            except ScreenshotError:
                raise
            except Exception as exc:
                dial_error = DialError.from_exception(exc)
                if dial_error.outcome is Outcome.CONNECTION:
                    dial_error.message = "dial failed: " + dial_error.message
                logger.warning("dial %s failed: %s", ws_url, dial_error.message)
                raise dial_error from exc

            run = CaptureRun(session=session, viewport=self.viewport, deadline=deadline)
            for step in self.plan:
                self.phase = step.phase
                try:
                    await step.run(run)
                except ScreenshotError:
                    raise
                except Exception as exc:
                    logger.warning("screenshot %s failed: %s", step.phase, exc)
                    raise CaptureError.from_exception(exc) from exc

        if run.image is None:
            raise CaptureError("capture produced no image")
        return CapturedImage(format=self.canonical.request.format, data=run.image)


async def take_screenshot(
    canonical: CanonicalRequest,
    settings: Settings,
    *,
    resolver: EndpointResolver | None = None,
    session_factory: SessionFactory = open_session,
) -> CapturedImage:
    """Resolve the browser endpoint and capture, under one overall deadline."""
    loop = asyncio.get_running_loop()
    timeout_s = canonical.request.timeout
    deadline = loop.time() + timeout_s
    resolver = resolver or EndpointResolver(settings)

    try:
        ws_url = await asyncio.wait_for(resolver.resolve(), timeout=timeout_s)
    except asyncio.TimeoutError:
        raise ResolutionError(f"endpoint resolution exceeded request timeout ({timeout_s}s)", Outcome.TIMEOUT) from None

    logger.info("capturing %s via %s", canonical.request.url, ws_url)
    orchestrator = CaptureOrchestrator(canonical, session_factory=session_factory)
    return await orchestrator.run(ws_url, deadline)
