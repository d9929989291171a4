"""
Tests for CDP endpoint discovery and rewriting
"""
import asyncio
from urllib.parse import urlsplit

import httpx
import pytest

from conftest import discovery_transport
from screenshot_agent.config import Settings
from screenshot_agent.errors import NotConfiguredError, Outcome, ResolutionError
from screenshot_agent.resolver import (
    EndpointResolver,
    has_devtools_path,
    http_base_from_ws_endpoint,
    parse_http_base,
    rewrite_debugger_url,
)


def _resolve(settings, routes=None, seen=None, transport=None):
    transport = transport or discovery_transport(routes or {}, seen)
    return asyncio.run(EndpointResolver(settings, transport=transport).resolve())


class TestRewrite:
    def test_authority_and_scheme_follow_control_plane(self):
        base = urlsplit("https://example.com:8443")
        rewritten = rewrite_debugger_url("ws://0.0.0.0:3000/devtools/browser/abc", base)
        assert rewritten == "wss://example.com:8443/devtools/browser/abc"

    @pytest.mark.parametrize("base, expected", [
        ("http://example.com", "ws://example.com:80/devtools/page/1"),
        ("https://example.com/prefix", "wss://example.com:443/devtools/page/1"),
    ])
    def test_default_ports(self, base, expected):
        assert rewrite_debugger_url("ws://10.0.0.5:9222/devtools/page/1", urlsplit(base)) == expected

    def test_ipv6_host(self):
        rewritten = rewrite_debugger_url("ws://0.0.0.0:3000/devtools/browser/x", urlsplit("http://[::1]:3000"))
        assert rewritten == "ws://[::1]:3000/devtools/browser/x"

    def test_missing_url(self):
        with pytest.raises(ResolutionError, match="missing webSocketDebuggerUrl"):
            rewrite_debugger_url("  ", urlsplit("http://example.com"))

    def test_devtools_path_detection(self):
        assert has_devtools_path("ws://h:1/devtools/browser/a")
        assert has_devtools_path("ws://h:1/devtools/page/a")
        assert not has_devtools_path("ws://0.0.0.0:3000")
        assert not has_devtools_path("")


class TestBaseParsing:
    def test_ws_endpoint_to_http_base(self):
        base = http_base_from_ws_endpoint("wss://chrome.internal:9222/proxy?token=1#x")
        assert (base.scheme, base.netloc, base.path, base.query, base.fragment) == (
            "https", "chrome.internal:9222", "/proxy", "", "")

    def test_ws_endpoint_bad_scheme(self):
        with pytest.raises(ResolutionError, match="scheme must be ws/wss"):
            http_base_from_ws_endpoint("http://chrome:9222")

    @pytest.mark.parametrize("raw, fragment", [
        ("localhost:3000", "scheme must be http/https"),
        ("ftp://host", "scheme must be http/https"),
        ("//host:3000", "missing scheme"),
        ("http://", "missing host"),
    ])
    def test_http_base_errors(self, raw, fragment):
        with pytest.raises(ResolutionError, match=fragment):
            parse_http_base(raw)

    @pytest.mark.parametrize("raw", ["http://localhost:abc", "http://localhost:99999"])
    def test_http_base_bad_port(self, raw):
        with pytest.raises(ResolutionError, match="invalid BROWSERLESS_HTTP_URL") as info:
            parse_http_base(raw)
        assert info.value.status_code == 502

    def test_ws_endpoint_bad_port(self):
        with pytest.raises(ResolutionError, match="invalid CHROME_WS_ENDPOINT"):
            http_base_from_ws_endpoint("ws://chrome:port")


class TestResolve:
    def test_not_configured(self):
        settings = Settings(browserless_http_url="", browserless_http_url_is_default=False)
        with pytest.raises(NotConfiguredError):
            _resolve(settings)

    def test_direct_browser_endpoint_skips_network(self):
        seen = []
        settings = Settings(chrome_ws_endpoint="ws://chrome:9222/devtools/browser/abc")
        assert _resolve(settings, seen=seen) == "ws://chrome:9222/devtools/browser/abc"
        assert seen == []

    def test_bare_ws_endpoint_uses_version(self):
        seen = []
        settings = Settings(chrome_ws_endpoint="ws://chrome:9222")
        routes = {("GET", "/json/version"): (200, {"webSocketDebuggerUrl": "ws://127.0.0.1:9222/devtools/browser/x"})}
        assert _resolve(settings, routes, seen) == "ws://chrome:9222/devtools/browser/x"
        assert seen == [("GET", "/json/version")]

    def test_http_base_with_path_prefix(self):
        settings = Settings(browserless_http_url="https://proxy.example.com/browser/")
        routes = {("GET", "/browser/json/version"): (200, {"webSocketDebuggerUrl": "ws://0.0.0.0:3000/devtools/browser/q"})}
        assert _resolve(settings, routes) == "wss://proxy.example.com:443/devtools/browser/q"

    def test_fallback_order_new_then_list(self, settings):
        seen = []
        routes = {
            ("GET", "/json/version"): (200, {"webSocketDebuggerUrl": "ws://0.0.0.0:3000"}),
            ("PUT", "/json/new"): (500, "boom"),
            ("GET", "/json/list"): (200, [
                {"webSocketDebuggerUrl": "ws://0.0.0.0:3000"},
                {"webSocketDebuggerUrl": "ws://0.0.0.0:3000/devtools/page/P1"},
                {"webSocketDebuggerUrl": "ws://0.0.0.0:3000/devtools/page/P2"},
            ]),
        }
        resolved = _resolve(settings, routes, seen)
        assert resolved == "ws://browserless.local:3000/devtools/page/P1"
        assert seen == [("GET", "/json/version"), ("PUT", "/json/new"), ("GET", "/json/list")]

    def test_json_new_wins_when_usable(self, settings):
        seen = []
        routes = {
            ("GET", "/json/version"): (200, {"webSocketDebuggerUrl": "ws://0.0.0.0:3000"}),
            ("PUT", "/json/new"): (200, {"id": "T", "webSocketDebuggerUrl": "ws://0.0.0.0:3000/devtools/page/T"}),
        }
        assert _resolve(settings, routes, seen) == "ws://browserless.local:3000/devtools/page/T"
        assert seen == [("GET", "/json/version"), ("PUT", "/json/new")]

    def test_exhausted_fallbacks(self, settings):
        routes = {
            ("GET", "/json/version"): (200, {"webSocketDebuggerUrl": "ws://0.0.0.0:3000"}),
            ("PUT", "/json/new"): (200, {"webSocketDebuggerUrl": ""}),
            ("GET", "/json/list"): (200, []),
        }
        with pytest.raises(ResolutionError) as info:
            _resolve(settings, routes)
        assert "fallbacks (/json/new,/json/list) failed" in info.value.message
        assert "returned 0 targets" in info.value.message
        assert info.value.status_code == 502

    def test_non_2xx_version(self, settings):
        routes = {("GET", "/json/version"): (503, "starting up")}
        with pytest.raises(ResolutionError) as info:
            _resolve(settings, routes)
        assert info.value.message == "browserless /json/version returned 503: starting up"

    def test_invalid_json(self, settings):
        routes = {("GET", "/json/version"): (200, "<html>")}
        with pytest.raises(ResolutionError, match="invalid JSON"):
            _resolve(settings, routes)

    def test_transport_timeout_is_classified(self, settings):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(ResolutionError) as info:
            _resolve(settings, transport=httpx.MockTransport(handler))
        assert info.value.outcome is Outcome.TIMEOUT
        assert info.value.status_code == 504

    def test_connection_refused_is_classified(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ResolutionError) as info:
            _resolve(settings, transport=httpx.MockTransport(handler))
        assert info.value.outcome is Outcome.CONNECTION
        assert "connection refused" in info.value.message

    def test_invalid_url_from_client_is_a_resolution_error(self, settings):
        def handler(request):
            raise httpx.InvalidURL("Invalid port: 'abc'")

        with pytest.raises(ResolutionError, match="invalid URL") as info:
            _resolve(settings, transport=httpx.MockTransport(handler))
        assert info.value.status_code == 502

    def test_malformed_port_fails_before_any_request(self):
        seen = []
        settings = Settings(browserless_http_url="http://localhost:abc")
        with pytest.raises(ResolutionError, match="invalid BROWSERLESS_HTTP_URL"):
            _resolve(settings, seen=seen)
        assert seen == []

    def test_resolution_is_stable(self, settings):
        routes = {("GET", "/json/version"): (200, {"webSocketDebuggerUrl": "ws://0.0.0.0:3000/devtools/browser/abc"})}
        first = urlsplit(_resolve(settings, routes))
        second = urlsplit(_resolve(settings, routes))
        assert (first.netloc, first.path) == (second.netloc, second.path)
