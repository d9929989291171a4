from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidRequestError

_MIME_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


class Clip(BaseModel):
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0


class ScreenshotRequest(BaseModel):
    # Zero / empty means "not set"; defaults are applied by the validator.
    url: str = ""
    selector: str = ""
    width: int = 0
    height: int = 0
    format: str = ""
    quality: int = 0
    wait_time: int = 0
    wait_for: str = ""
    full_page: bool = False
    headers: dict[str, str] | None = Field(default=None)
    user_agent: str = ""
    device_scale: float = 0
    mobile: bool = False
    landscape: bool = False
    timeout: int = 0
    clip: Clip | None = None

    @classmethod
    def from_json(cls, body: bytes) -> "ScreenshotRequest":
        try:
            return cls.model_validate_json(body)
        except PydanticValidationError:
            raise InvalidRequestError("invalid JSON body") from None

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "ScreenshotRequest":
        """Build a request from GET query parameters.

        ``height`` stays unset when absent so selector captures can defer it;
        ``headers`` and ``clip`` arrive as URL-encoded JSON objects.
        """
        headers = None
        raw_headers = params.get("headers", "")
        if raw_headers:
            headers = _parse_json_object(raw_headers, "headers")
            if not all(isinstance(v, str) for v in headers.values()):
                raise InvalidRequestError("headers must be a valid JSON object")

        clip = None
        raw_clip = params.get("clip", "")
        if raw_clip:
            try:
                clip = Clip.model_validate(_parse_json_object(raw_clip, "clip"))
            except PydanticValidationError:
                raise InvalidRequestError("clip must be a valid JSON object") from None

        return cls(
            url=params.get("url", ""),
            selector=params.get("selector", ""),
            format=params.get("format") or "png",
            wait_for=params.get("wait_for", ""),
            width=_query_int(params, "width", 1920),
            height=_query_int(params, "height", 0),
            quality=_query_int(params, "quality", 90),
            wait_time=_query_int(params, "wait_time", 0),
            timeout=_query_int(params, "timeout", 30),
            device_scale=_query_float(params, "device_scale", 1.0),
            full_page=_query_bool(params, "full_page", False),
            mobile=_query_bool(params, "mobile", False),
            landscape=_query_bool(params, "landscape", False),
            user_agent=params.get("user_agent", ""),
            headers=headers,
            clip=clip,
        )


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _query_bool(params: Mapping[str, str], key: str, default: bool) -> bool:
    value = params.get(key, "")
    if value == "":
        return default
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise InvalidRequestError(f"{key} must be boolean")


def _query_int(params: Mapping[str, str], key: str, default: int) -> int:
    value = params.get(key, "")
    if value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidRequestError(f"{key} must be integer") from None


def _query_float(params: Mapping[str, str], key: str, default: float) -> float:
    value = params.get(key, "")
    if value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise InvalidRequestError(f"{key} must be number") from None


def _parse_json_object(raw: str, name: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except ValueError:
        raise InvalidRequestError(f"{name} must be a valid JSON object") from None
    if not isinstance(value, dict):
        raise InvalidRequestError(f"{name} must be a valid JSON object")
    return value


@dataclass
class Viewport:
    width: int
    height: int
    scale: float = 1.0
    mobile: bool = False

    def as_device_metrics(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "deviceScaleFactor": self.scale,
            "mobile": self.mobile,
        }


@dataclass
class ClipRect:
    x: float
    y: float
    width: float
    height: float
    scale: float = 1.0

    @classmethod
    def from_clip(cls, clip: Clip) -> "ClipRect":
        return cls(x=clip.x, y=clip.y, width=clip.width, height=clip.height)

    def as_cdp(self) -> dict[str, float]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "scale": self.scale,
        }


@dataclass(frozen=True)
class CapturedImage:
    format: str
    data: bytes

    @property
    def mime(self) -> str:
        return _MIME_TYPES.get(self.format, "image/png")
