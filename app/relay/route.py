import html
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, Response
from opentelemetry import trace

from app.relay.content_cache import ContentCache
from app.relay.cookie_jar import SessionCookieJar
from app.relay.errors import RelayError
from app.relay.models import RelayRequest
from app.relay.orchestrator import RelayOrchestrator
from app.relay.sweeper import PeriodicSweeper
from app.relay.url_resolver import build_proxy_base
from app.utils.traced_requests import traced_request
from app.vars import (
    CACHE_MAX_ITEM_SIZE,
    CACHE_MAX_SIZE,
    CACHE_SWEEP_INTERVAL,
    CACHE_TTL,
    COOKIE_MAX_AGE,
    COOKIE_SWEEP_INTERVAL,
    DEFAULT_SESSION_ID,
    PROXY_PATH,
    PUBLIC_URL,
    SESSION_PARAM,
)

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
SHORT_SESSION_PARAM = "s"

content_cache = ContentCache(CACHE_MAX_SIZE, CACHE_MAX_ITEM_SIZE, CACHE_TTL)
cookie_jar = SessionCookieJar(COOKIE_MAX_AGE)
orchestrator = RelayOrchestrator(content_cache, cookie_jar)

sweepers = [
    PeriodicSweeper("cache", CACHE_SWEEP_INTERVAL, content_cache.sweep_expired),
    PeriodicSweeper("sessions", COOKIE_SWEEP_INTERVAL, cookie_jar.sweep_idle),
]

_ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Proxy error</title></head>
<body style="font-family: sans-serif; padding: 2em;">
<h1>{title}</h1>
<p>{message}</p>
<p><code>{url}</code></p>
</body>
</html>"""

_ERROR_TITLES = {
    400: "Invalid address",
    502: "Could not reach the site",
    504: "The site took too long to respond",
}


def get_proxy_origin(request: Request) -> str:
    """Public origin of this proxy, as seen by the browser."""
    if PUBLIC_URL:
        return PUBLIC_URL
    host = request.headers.get("host") or (request.client.host if request.client else "localhost")
    return f"{request.url.scheme}://{host}"


def get_session_id(request: Request) -> str:
    params = request.query_params
    return params.get(SESSION_PARAM) or params.get(SHORT_SESSION_PARAM) or DEFAULT_SESSION_ID


def error_response(request: Request, error: RelayError, raw_url: Optional[str]) -> Response:
    """
    Render a relay failure for the client.

    Browsers navigating through the proxy get a small HTML page; everything
    else gets the regular JSON error body.
    """
    if "text/html" in request.headers.get("accept", ""):
        page = _ERROR_PAGE.format(
            title=_ERROR_TITLES.get(error.status_code, "Proxy error"),
            message=html.escape(error.message),
            url=html.escape(raw_url or ""),
        )
        return HTMLResponse(
            page, status_code=error.status_code, headers={"X-Proxy-Error": error.kind}
        )
    raise HTTPException(
        status_code=error.status_code,
        detail=error.message,
        headers={"X-Proxy-Error": error.kind},
    )


@router.api_route(PROXY_PATH, methods=RELAY_METHODS)
async def relay(request: Request):
    raw_url = request.query_params.get("url")
    session_id = get_session_id(request)
    method = request.method.upper()

    with traced_request(
        tracer,
        operation="relay",
        session_value=session_id,
        start_message=f"[Relay] {method} {raw_url} (session {session_id})",
        extra_attrs={"relay.method": method, "relay.raw_url": raw_url},
    ) as span:
        relay_request = RelayRequest(
            method=method,
            raw_url=raw_url,
            session_id=session_id,
            proxy_base=build_proxy_base(get_proxy_origin(request), session_id),
            body=await request.body() if method in ("POST", "PUT", "PATCH") else b"",
            content_type=request.headers.get("content-type"),
            referer=request.headers.get("referer"),
        )
        try:
            result = await orchestrator.relay(relay_request)
        except RelayError as e:
            span.set_attribute("relay.error", e.kind)
            span.set_attribute("http.status_code", e.status_code)
            return error_response(request, e, raw_url)

        span.set_attribute("http.status_code", result.status_code)

        headers = dict(result.headers)
        headers["X-Proxy-Final-Url"] = result.final_url
        headers["X-Proxy-Cache"] = result.cache_status.value
        return Response(
            content=result.body,
            status_code=result.status_code,
            media_type=result.content_type,
            headers=headers,
        )
