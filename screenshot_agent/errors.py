"""Error taxonomy for the screenshot pipeline.

Two layers live here:

* typed transport errors raised by the browser session (``CdpTimeoutError``,
  ``CdpConnectionError``, ``CdpProtocolError``) and the ``classify`` function
  that maps any failure to an ``Outcome``;
* the HTTP-facing errors (``InvalidRequestError`` ... ``CaptureError``), each of
  which knows its status code and JSON payload.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx


class Outcome(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    INTERNAL = "internal"


class BrowserError(Exception):
    """Failure reported by the CDP transport."""


class CdpTimeoutError(BrowserError):
    pass


class CdpConnectionError(BrowserError):
    pass


class CdpProtocolError(BrowserError):
    pass


def classify(exc: BaseException) -> Outcome:
    if isinstance(exc, ScreenshotError):
        return exc.outcome
    # TimeoutError subclasses OSError, so it has to be checked first.
    if isinstance(exc, (CdpTimeoutError, asyncio.TimeoutError, TimeoutError, asyncio.CancelledError)):
        return Outcome.TIMEOUT
    if isinstance(exc, httpx.TimeoutException):
        return Outcome.TIMEOUT
    if isinstance(exc, (CdpConnectionError, httpx.TransportError, OSError)):
        return Outcome.CONNECTION
    return Outcome.INTERNAL


class ScreenshotError(Exception):
    status_code = 500
    error = "internal error"

    def __init__(self, message: str, outcome: Outcome = Outcome.INTERNAL):
        super().__init__(message)
        self.message = message
        self.outcome = outcome

    @classmethod
    def from_exception(cls, exc: BaseException, prefix: str = ""):
        message = str(exc) or exc.__class__.__name__
        return cls(prefix + message, classify(exc))

    def payload(self) -> dict[str, Any]:
        return {"error": self.error, "details": self.message}


class InvalidRequestError(ScreenshotError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        return {"error": self.message}


class NotConfiguredError(ScreenshotError):
    status_code = 503
    error = "browserless/chrome endpoint is not configured, set BROWSERLESS_HTTP_URL or CHROME_WS_ENDPOINT"

    def payload(self) -> dict[str, Any]:
        return {"error": self.error}


class ResolutionError(ScreenshotError):
    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 504 if self.outcome is Outcome.TIMEOUT else 502

    @property
    def error(self) -> str:  # type: ignore[override]
        if self.outcome is Outcome.TIMEOUT:
            return "browserless endpoint timeout"
        return "failed to resolve browserless websocket endpoint"


class DialError(ScreenshotError):
    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 504 if self.outcome is Outcome.TIMEOUT else 502

    @property
    def error(self) -> str:  # type: ignore[override]
        if self.outcome is Outcome.TIMEOUT:
            return "chrome dial timeout"
        return "failed to connect chrome endpoint"


class CaptureError(ScreenshotError):
    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.outcome is Outcome.TIMEOUT:
            return 504
        if self.outcome is Outcome.CONNECTION:
            return 502
        return 500

    @property
    def error(self) -> str:  # type: ignore[override]
        if self.outcome is Outcome.TIMEOUT:
            return "screenshot timeout"
        if self.outcome is Outcome.CONNECTION:
            return "failed to connect chrome endpoint"
        return "failed to screenshot"
