from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping

# The original deployment notes point at port 25004, the compiled default has
# always been 3000. We keep 3000 and warn at startup whenever it is in effect.
DEFAULT_BROWSERLESS_HTTP_URL = "http://localhost:3000"
DEFAULT_PORT = 8080

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    # "" means the control plane is explicitly not configured.
    browserless_http_url: str = DEFAULT_BROWSERLESS_HTTP_URL
    browserless_http_url_is_default: bool = True
    chrome_ws_endpoint: str = ""
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ()


def _getenv_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _split_origins(raw: str) -> tuple[str, ...]:
    return tuple(o.strip() for o in raw.split(",") if o.strip())


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Read process configuration once.

    ``BROWSERLESS_HTTP_URL`` distinguishes "absent" (use the default) from
    "set but empty" (no control plane configured at all).
    """
    env = os.environ if environ is None else environ

    if "BROWSERLESS_HTTP_URL" in env:
        http_url = env["BROWSERLESS_HTTP_URL"].strip()
        is_default = False
    else:
        http_url = DEFAULT_BROWSERLESS_HTTP_URL
        is_default = True

    return Settings(
        port=_getenv_int(env, "PORT", DEFAULT_PORT),
        host=(env.get("HOST") or "0.0.0.0").strip(),
        browserless_http_url=http_url,
        browserless_http_url_is_default=is_default,
        chrome_ws_endpoint=(env.get("CHROME_WS_ENDPOINT") or "").strip(),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        cors_origins=_split_origins(env.get("SCREENSHOT_CORS_ORIGINS", "")),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.browserless_http_url_is_default and not settings.chrome_ws_endpoint:
        logger.warning(
            "BROWSERLESS_HTTP_URL is not set, falling back to built-in default %s",
            DEFAULT_BROWSERLESS_HTTP_URL,
        )
