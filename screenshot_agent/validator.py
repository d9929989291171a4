from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import InvalidRequestError
from .models import ScreenshotRequest, Viewport

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
DEFAULT_FORMAT = "png"
DEFAULT_QUALITY = 90
DEFAULT_DEVICE_SCALE = 1.0
DEFAULT_TIMEOUT_S = 30
MAX_TIMEOUT_S = 120

FORMATS = ("png", "jpeg", "webp")


@dataclass(frozen=True)
class CanonicalRequest:
    request: ScreenshotRequest
    # Load viewport, after the mobile+landscape swap.
    viewport_width: int
    viewport_height: int
    # Selector capture with no explicit height: grow the viewport before capturing.
    auto_expand: bool

    def new_viewport(self) -> Viewport:
        return Viewport(
            width=self.viewport_width,
            height=self.viewport_height,
            scale=self.request.device_scale,
            mobile=self.request.mobile,
        )


def apply_defaults(req: ScreenshotRequest) -> ScreenshotRequest:
    update: dict[str, object] = {}
    if req.width == 0:
        update["width"] = DEFAULT_WIDTH
    if req.height == 0 and not req.selector:
        update["height"] = DEFAULT_HEIGHT
    if not req.format:
        update["format"] = DEFAULT_FORMAT
    if req.quality == 0:
        update["quality"] = DEFAULT_QUALITY
    if req.device_scale == 0:
        update["device_scale"] = DEFAULT_DEVICE_SCALE
    if req.timeout == 0:
        update["timeout"] = DEFAULT_TIMEOUT_S
    return req.model_copy(update=update) if update else req


def _is_http_url(raw: str) -> bool:
    try:
        parsed = urlparse(raw)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate(req: ScreenshotRequest) -> ScreenshotRequest:
    """Check a defaulted request; the first violated rule wins.

    Returns the request with ``format`` case-folded.
    """
    if not req.url:
        raise InvalidRequestError("url is required")
    if not _is_http_url(req.url):
        raise InvalidRequestError("url must be a valid http/https URL")

    if req.width < 100 or req.width > 4096:
        raise InvalidRequestError("width must be between 100 and 4096")
    # 0 is only allowed for selector captures, which measure the page instead.
    if req.height != 0:
        if req.height < 100 or req.height > 10000:
            raise InvalidRequestError("height must be between 100 and 10000")
    elif not req.selector:
        raise InvalidRequestError("height must be between 100 and 10000")

    fmt = req.format.lower()
    if fmt not in FORMATS:
        raise InvalidRequestError("format must be one of: png, jpeg, webp")

    if req.quality < 1 or req.quality > 100:
        raise InvalidRequestError("quality must be between 1 and 100")

    if req.timeout < 1 or req.timeout > MAX_TIMEOUT_S:
        raise InvalidRequestError(f"timeout must be between 1 and {MAX_TIMEOUT_S} seconds")

    if req.device_scale <= 0 or req.device_scale > 4:
        raise InvalidRequestError("device_scale must be between 0 and 4")

    if req.wait_time < 0:
        raise InvalidRequestError("wait_time must be >= 0")

    if req.clip is not None:
        if req.clip.width <= 0 or req.clip.height <= 0:
            raise InvalidRequestError("clip width/height must be > 0")
        if req.clip.x < 0 or req.clip.y < 0:
            raise InvalidRequestError("clip x/y must be >= 0")

    if fmt != req.format:
        req = req.model_copy(update={"format": fmt})
    return req


def normalize(raw: ScreenshotRequest) -> CanonicalRequest:
    req = validate(apply_defaults(raw))

    width = req.width
    height = req.height
    auto_expand = bool(req.selector) and req.height == 0
    if height == 0:
        height = DEFAULT_HEIGHT

    if req.mobile and req.landscape:
        width, height = height, width

    return CanonicalRequest(
        request=req,
        viewport_width=width,
        viewport_height=height,
        auto_expand=auto_expand,
    )
