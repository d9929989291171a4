from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .cdp import open_session
from .config import Settings, configure_logging, load_settings
from .errors import NotConfiguredError, ScreenshotError
from .models import ScreenshotRequest
from .resolver import EndpointResolver
from .screenshot import SessionFactory, take_screenshot
from .validator import normalize


# Load .env from the repo root (local dev); real environment variables win.
_HERE = Path(__file__).resolve()
load_dotenv(_HERE.parents[1] / ".env", override=False)

HEALTH_PROBE_TIMEOUT_S = 2.0


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: SessionFactory = open_session,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(title="Screenshot Agent", version="0.1.0")
    app.state.settings = settings

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def resolver() -> EndpointResolver:
        return EndpointResolver(settings, transport=http_transport)

    @app.exception_handler(ScreenshotError)
    async def screenshot_error_handler(request: Request, exc: ScreenshotError):
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    @app.get("/health")
    async def health():
        ws_url = ""
        configured = True
        details = None
        try:
            ws_url = await asyncio.wait_for(resolver().resolve(), timeout=HEALTH_PROBE_TIMEOUT_S)
        except asyncio.TimeoutError:
            details = f"endpoint resolution exceeded {HEALTH_PROBE_TIMEOUT_S:g}s"
        except ScreenshotError as exc:
            configured = not isinstance(exc, NotConfiguredError)
            details = exc.message

        available = configured and details is None and bool(ws_url)
        payload = {
            "status": "ok" if available else "degraded",
            "time": _rfc3339_now(),
            "chrome_ws_configured": configured,
            "chrome_ws_available": available,
            "browserless_http_url": settings.browserless_http_url,
            "browserless_http_url_is_default": settings.browserless_http_url_is_default,
            "chrome_ws_endpoint": ws_url,
        }
        if details is not None:
            payload["details"] = details
        return JSONResponse(status_code=200 if available else 503, content=payload)

    @app.api_route("/screenshot", methods=["GET", "POST"])
    async def screenshot_endpoint(request: Request):
        if request.method == "GET":
            raw = ScreenshotRequest.from_query(request.query_params)
        else:
            raw = ScreenshotRequest.from_json(await request.body())

        canonical = normalize(raw)
        shot = await take_screenshot(
            canonical,
            settings,
            resolver=resolver(),
            session_factory=session_factory,
        )
        return Response(content=shot.data, media_type=shot.mime, headers={"cache-control": "no-store"})

    return app


app = create_app()


def run() -> None:
    settings: Settings = app.state.settings
    configure_logging(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
