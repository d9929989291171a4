"""Discover a connectable CDP WebSocket URL for the remote browser.

Resolution order:

1. ``CHROME_WS_ENDPOINT`` already pointing at ``/devtools/browser/...`` is used
   as is.
2. Otherwise an HTTP control-plane base is derived, either from a bare
   ``CHROME_WS_ENDPOINT`` (ws -> http, wss -> https) or from
   ``BROWSERLESS_HTTP_URL``.
3. ``GET /json/version`` is queried. browserless sometimes advertises
   ``ws://0.0.0.0:3000`` with no devtools path, which cannot be upgraded, so in
   that case ``PUT /json/new`` and then ``GET /json/list`` are tried.

Advertised URLs usually carry a container-internal authority, so every
discovered URL is rewritten onto the control plane's scheme and host:port.
Nothing is cached: a restarted browser is picked up on the next request.
"""
from __future__ import annotations

import logging
from typing import Any
from urllib.parse import SplitResult, urlsplit, urlunsplit

import httpx

from .config import Settings
from .errors import NotConfiguredError, Outcome, ResolutionError, classify

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT_S = 5.0
DEVTOOLS_PATH_PREFIX = "/devtools/"
BROWSER_PATH_PREFIX = "/devtools/browser/"

_ERROR_BODY_LIMIT = 4096
_WS_SCHEME_FOR_HTTP = {"http": "ws", "https": "wss"}
_HTTP_SCHEME_FOR_WS = {"ws": "http", "wss": "https"}
_DEFAULT_PORTS = {"http": 80, "https": 443}


def has_devtools_path(ws_url: str) -> bool:
    ws_url = (ws_url or "").strip()
    if not ws_url:
        return False
    try:
        path = urlsplit(ws_url).path.strip()
    except ValueError:
        return False
    return path.startswith(DEVTOOLS_PATH_PREFIX)


def _format_host(host: str) -> str:
    return f"[{host}]" if ":" in host else host


def _check_port(parsed: SplitResult, name: str, raw: str) -> None:
    try:
        parsed.port
    except ValueError as exc:
        raise ResolutionError(f"invalid {name} {raw!r}: {exc}") from None


def parse_http_base(raw: str) -> SplitResult:
    raw = raw.strip()
    if not raw:
        raise ResolutionError("BROWSERLESS_HTTP_URL is empty")
    try:
        base = urlsplit(raw)
    except ValueError as exc:
        raise ResolutionError(f"invalid BROWSERLESS_HTTP_URL {raw!r}: {exc}") from None
    if not base.scheme:
        raise ResolutionError(f"invalid BROWSERLESS_HTTP_URL {raw!r}: missing scheme (http/https)")
    if base.scheme not in _WS_SCHEME_FOR_HTTP:
        raise ResolutionError(f"invalid BROWSERLESS_HTTP_URL {raw!r}: scheme must be http/https")
    if not base.netloc:
        raise ResolutionError(f"invalid BROWSERLESS_HTTP_URL {raw!r}: missing host")
    _check_port(base, "BROWSERLESS_HTTP_URL", raw)
    return base


def http_base_from_ws_endpoint(raw: str) -> SplitResult:
    raw = raw.strip()
    try:
        ws = urlsplit(raw)
    except ValueError as exc:
        raise ResolutionError(f"invalid CHROME_WS_ENDPOINT {raw!r}: {exc}") from None
    if ws.scheme not in _HTTP_SCHEME_FOR_WS:
        raise ResolutionError(f"invalid CHROME_WS_ENDPOINT {raw!r}: scheme must be ws/wss, got {ws.scheme!r}")
    if not ws.netloc:
        raise ResolutionError(f"invalid CHROME_WS_ENDPOINT {raw!r}: missing host")
    _check_port(ws, "CHROME_WS_ENDPOINT", raw)
    # Path is kept for reverse proxies mounted under a prefix.
    return SplitResult(_HTTP_SCHEME_FOR_WS[ws.scheme], ws.netloc, ws.path, "", "")


def _authority(base: SplitResult) -> str:
    host = base.hostname
    if not host:
        raise ResolutionError(f"invalid BROWSERLESS_HTTP_URL {urlunsplit(base)!r}: missing hostname")
    try:
        port = base.port
    except ValueError as exc:
        raise ResolutionError(f"invalid BROWSERLESS_HTTP_URL {urlunsplit(base)!r}: {exc}") from None
    if port is None:
        port = _DEFAULT_PORTS[base.scheme]
    return f"{_format_host(host)}:{port}"


def rewrite_debugger_url(ws_url: str, base: SplitResult) -> str:
    """Move a discovered debugger URL onto the control plane's authority."""
    raw = (ws_url or "").strip()
    if not raw:
        raise ResolutionError("missing webSocketDebuggerUrl")
    try:
        parsed = urlsplit(raw)
    except ValueError as exc:
        raise ResolutionError(f"invalid webSocketDebuggerUrl {raw!r}: {exc}") from None
    if not parsed.scheme or not parsed.netloc:
        raise ResolutionError(f"invalid webSocketDebuggerUrl {raw!r}: missing scheme or host")

    return urlunsplit(parsed._replace(scheme=_WS_SCHEME_FOR_HTTP[base.scheme], netloc=_authority(base)))


def _endpoint_url(base: SplitResult, suffix: str) -> str:
    path = base.path.rstrip("/") + suffix
    return urlunsplit((base.scheme, base.netloc, path, "", ""))


class EndpointResolver:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    async def resolve(self) -> str:
        ws_endpoint = self.settings.chrome_ws_endpoint.strip()
        if ws_endpoint:
            try:
                direct = urlsplit(ws_endpoint).path.startswith(BROWSER_PATH_PREFIX)
            except ValueError:
                direct = False
            if direct:
                logger.info("using CHROME_WS_ENDPOINT as is: %s", ws_endpoint)
                return ws_endpoint

            base = http_base_from_ws_endpoint(ws_endpoint)
            resolved = await self._resolve_via_version(base)
            logger.info("CHROME_WS_ENDPOINT=%s resolved via /json/version -> %s", ws_endpoint, resolved)
            return resolved

        http_url = self.settings.browserless_http_url.strip()
        if not http_url:
            raise NotConfiguredError("browserless endpoint is not configured")

        base = parse_http_base(http_url)
        resolved = await self._resolve_via_version(base)
        logger.info("BROWSERLESS_HTTP_URL=%s resolved via /json/version -> %s", http_url, resolved)
        return resolved

    async def _request_json(self, client: httpx.AsyncClient, method: str, url: str, label: str) -> Any:
        try:
            res = await client.request(method, url)
        except httpx.InvalidURL as exc:
            raise ResolutionError(f"browserless {label} request failed: invalid URL {url!r}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ResolutionError(
                f"browserless {label} request failed: {str(exc) or exc.__class__.__name__}",
                classify(exc),
            ) from exc

        if not 200 <= res.status_code < 300:
            body = res.content[:_ERROR_BODY_LIMIT].decode("utf-8", errors="replace").strip()
            raise ResolutionError(f"browserless {label} returned {res.status_code}: {body}")

        try:
            return res.json()
        except ValueError as exc:
            raise ResolutionError(f"browserless {label} returned invalid JSON: {exc}") from None

    async def _resolve_via_version(self, base: SplitResult) -> str:
        async with httpx.AsyncClient(timeout=DISCOVERY_TIMEOUT_S, transport=self._transport) as client:
            payload = await self._request_json(client, "GET", _endpoint_url(base, "/json/version"), "/json/version")
            if not isinstance(payload, dict):
                raise ResolutionError("browserless /json/version returned an unexpected payload")

            raw = str(payload.get("webSocketDebuggerUrl") or "").strip()
            logger.info("/json/version webSocketDebuggerUrl=%r", raw)
            if has_devtools_path(raw):
                return rewrite_debugger_url(raw, base)

            logger.info("/json/version ws has no /devtools path, trying /json/new then /json/list")
            last: ResolutionError | None = None
            for fallback in (self._resolve_via_new, self._resolve_via_list):
                try:
                    return await fallback(client, base)
                except ResolutionError as exc:
                    logger.warning("fallback failed: %s", exc)
                    last = exc

        raise ResolutionError(
            f"browserless /json/version returned non-devtools ws ({raw!r}) "
            f"and fallbacks (/json/new,/json/list) failed: {last}",
            last.outcome if last is not None else Outcome.INTERNAL,
        )

    async def _resolve_via_new(self, client: httpx.AsyncClient, base: SplitResult) -> str:
        payload = await self._request_json(client, "PUT", _endpoint_url(base, "/json/new"), "/json/new")
        if not isinstance(payload, dict):
            raise ResolutionError("browserless /json/new returned an unexpected payload")

        raw = str(payload.get("webSocketDebuggerUrl") or "").strip()
        if not has_devtools_path(raw):
            raise ResolutionError(f"browserless /json/new returned non-devtools ws: {raw!r}")

        rewritten = rewrite_debugger_url(raw, base)
        logger.info("resolved via /json/new raw=%r rewritten=%r", raw, rewritten)
        return rewritten

    async def _resolve_via_list(self, client: httpx.AsyncClient, base: SplitResult) -> str:
        payload = await self._request_json(client, "GET", _endpoint_url(base, "/json/list"), "/json/list")
        if not isinstance(payload, list):
            raise ResolutionError("browserless /json/list returned an unexpected payload")

        for target in payload:
            if not isinstance(target, dict):
                continue
            raw = str(target.get("webSocketDebuggerUrl") or "").strip()
            if not has_devtools_path(raw):
                continue
            try:
                rewritten = rewrite_debugger_url(raw, base)
            except ResolutionError:
                continue
            logger.info("resolved via /json/list raw=%r rewritten=%r", raw, rewritten)
            return rewritten

        raise ResolutionError(
            f"browserless /json/list returned {len(payload)} targets, but none has a usable devtools ws"
        )
