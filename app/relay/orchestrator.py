import asyncio
import logging
import re
from typing import Optional, Union
from urllib.parse import urlsplit

import httpx
from opentelemetry import trace

from app.relay.content_cache import CacheEntry, ContentCache
from app.relay.cookie_jar import SessionCookieJar
from app.relay.errors import (
    ClientInputError,
    RelayError,
    ResolutionError,
    UnclassifiedError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from app.relay.metrics import CACHE_LOOKUPS, UPSTREAM_REQUESTS
from app.relay.models import (
    CacheStatus,
    ContentKind,
    RelayRequest,
    RelayResult,
    RelayState,
)
from app.relay.rewrite import (
    RewriteContext,
    rewrite_css,
    rewrite_html,
    rewrite_manifest,
    rewrite_svg,
)
from app.relay.url_resolver import normalize_target, unwrap_proxy_url
from app.utils import mask_token
from app.utils.exception_logging import (
    describe_transport_error,
    log_exception_with_details,
)
from app.vars import (
    MAX_REDIRECTS,
    PROXY_TIMEOUT,
    UPSTREAM_ACCEPT,
    UPSTREAM_ACCEPT_LANGUAGE,
    UPSTREAM_USER_AGENT,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

BODY_METHODS = {"POST", "PUT", "PATCH"}
NO_BODY_STATUSES = {204, 304}

# Hop-by-hop headers that should NOT be relayed (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers that stop the relayed content from being framed or loaded
# from the proxy's origin
BLOCKED_RESPONSE_HEADERS = {
    "x-frame-options",
    "content-security-policy",
    "content-security-policy-report-only",
    "x-content-type-options",
    "strict-transport-security",
    "cross-origin-opener-policy",
    "cross-origin-embedder-policy",
    "cross-origin-resource-policy",
    "report-to",
    "nel",
}

# Headers the relay recomputes itself or that would point the client at
# the upstream origin directly
DROPPED_RESPONSE_HEADERS = {
    "content-length",
    "content-encoding",
    "content-type",
    "set-cookie",
    "location",
    "link",
    "refresh",
}

BINARY_PREFIXES = ("image/", "font/", "audio/", "video/")
BINARY_TYPES = {
    "application/octet-stream",
    "application/font-woff",
    "application/font-woff2",
    "application/x-font-ttf",
    "application/x-font-woff",
    "application/x-font-opentype",
    "application/vnd.ms-fontobject",
}

_CHARSET_RE = re.compile(r"""charset\s*=\s*["']?([\w.:-]+)""", re.IGNORECASE)
_META_CHARSET_RE = re.compile(
    rb"""<meta[^>]+charset\s*=\s*["']?([\w.:-]+)""", re.IGNORECASE
)


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def classify_content_type(content_type: Optional[str]) -> ContentKind:
    """Pick the processing path purely from the declared content type."""
    media = media_type(content_type)
    if not media or "html" in media:
        return ContentKind.HTML
    if media == "image/svg+xml":
        return ContentKind.SVG
    if media.startswith(BINARY_PREFIXES) or media in BINARY_TYPES:
        return ContentKind.BINARY
    if media == "text/css":
        return ContentKind.CSS
    if "manifest+json" in media:
        return ContentKind.MANIFEST
    if "javascript" in media or "json" in media:
        return ContentKind.SCRIPT
    return ContentKind.OPAQUE


def decode_text(payload: bytes, content_type: Optional[str], sniff_meta: bool = False) -> str:
    """Decode a text payload using the declared charset, a <meta charset> or UTF-8."""
    match = _CHARSET_RE.search(content_type or "")
    encoding = match.group(1) if match else None
    if encoding is None and sniff_meta:
        meta = _META_CHARSET_RE.search(payload[:2048])
        if meta:
            encoding = meta.group(1).decode("ascii", errors="ignore")
    try:
        return payload.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def relay_response_headers(headers: httpx.Headers) -> dict[str, str]:
    relayed = {}
    for name, value in headers.items():
        lower = name.lower()
        if (
            lower in HOP_BY_HOP_HEADERS
            or lower in BLOCKED_RESPONSE_HEADERS
            or lower in DROPPED_RESPONSE_HEADERS
        ):
            continue
        relayed[name] = value
    return relayed


class RelayOrchestrator:
    """
    Per-request control flow of the relay:
    resolve -> cache check -> fetch -> classify -> transform -> respond.

    The cache and cookie jar are shared by all concurrent requests; each
    call to ``relay`` only touches them through their own locked operations.
    """

    def __init__(
        self,
        cache: ContentCache,
        cookie_jar: SessionCookieJar,
        *,
        timeout: float = PROXY_TIMEOUT,
        max_redirects: int = MAX_REDIRECTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache
        self.cookie_jar = cookie_jar
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._transport = transport

    async def relay(self, request: RelayRequest) -> RelayResult:
        method = request.method.upper()
        with tracer.start_as_current_span("relay_request") as span:
            span.set_attribute("relay.method", method)
            state = self._enter(span, RelayState.RESOLVING)
            try:
                target_url = self._resolve_target(request.raw_url)
                span.set_attribute("relay.target_url", target_url)
                logger.debug(
                    mask_token(
                        f"[Relay] {method} {target_url} (session {request.session_id})",
                        request.session_id,
                    )
                )

                if method == "GET":
                    state = self._enter(span, RelayState.CACHE_CHECK)
                    entry = self._cache_lookup(target_url)
                    if entry is not None:
                        span.set_attribute("relay.cache", CacheStatus.HIT.value)
                        self._touch_session(request.session_id)
                        state = self._enter(span, RelayState.RESPONDING)
                        result = self._from_cache(entry, request)
                        self._enter(span, RelayState.DONE)
                        return result

                state = self._enter(span, RelayState.FETCHING)
                self._touch_session(request.session_id)
                response = await self._fetch(method, target_url, request)
                final_url = str(response.url)
                relayed_headers = relay_response_headers(response.headers)
                span.set_attribute("relay.status_code", response.status_code)

                state = self._enter(span, RelayState.CLASSIFYING)
                content_type = response.headers.get("content-type", "")
                kind = classify_content_type(content_type)
                span.set_attribute("relay.content_kind", kind.value)

                cache_status = CacheStatus.BYPASS
                if method == "GET" and kind is not ContentKind.HTML:
                    cache_status = CacheStatus.MISS
                    if response.status_code == 200:
                        self._cache_store(
                            target_url,
                            response.content,
                            content_type,
                            final_url,
                            relayed_headers,
                        )

                span.set_attribute("relay.cache", cache_status.value)

                state = self._enter(span, RelayState.TRANSFORMING)
                if method == "HEAD" or response.status_code in NO_BODY_STATUSES:
                    body, out_type = b"", content_type or "text/html; charset=utf-8"
                else:
                    body, out_type = self.transform(
                        kind, response.content, content_type, final_url, request.proxy_base
                    )

                state = self._enter(span, RelayState.RESPONDING)
                result = RelayResult(
                    status_code=response.status_code,
                    content_type=out_type,
                    body=body,
                    final_url=final_url,
                    cache_status=cache_status,
                    content_kind=kind,
                    headers=relayed_headers,
                )
                self._enter(span, RelayState.DONE)
                return result
            except RelayError as e:
                self._enter(span, RelayState.FAILED)
                span.set_attribute("relay.error", e.kind)
                logger.warning(f"[Relay] Failed while {state.value}: {e.message}")
                raise
            except Exception as e:
                self._enter(span, RelayState.FAILED)
                span.set_attribute("relay.error", str(e))
                log_exception_with_details(logger, f"[Relay] Failed while {state.value}:", e)
                raise UnclassifiedError(str(e) or type(e).__name__) from e

    def _enter(self, span, state: RelayState) -> RelayState:
        span.set_attribute("relay.state", state.value)
        logger.debug(f"[Relay] -> {state.value}")
        return state

    def _resolve_target(self, raw_url: Optional[str]) -> str:
        try:
            return normalize_target(raw_url)
        except ResolutionError as e:
            raise ClientInputError(str(e)) from e

    def transform(
        self,
        kind: ContentKind,
        payload: bytes,
        content_type: str,
        document_url: str,
        proxy_base: str,
    ) -> tuple[Union[bytes, str], str]:
        """Turn an upstream payload into the body and content type sent to the client."""
        context = RewriteContext.for_document(document_url, proxy_base)
        if kind is ContentKind.HTML:
            html = decode_text(payload, content_type, sniff_meta=True)
            return rewrite_html(html, context), "text/html; charset=utf-8"
        if kind is ContentKind.CSS:
            return rewrite_css(decode_text(payload, content_type), context), "text/css; charset=utf-8"
        if kind is ContentKind.SVG:
            return rewrite_svg(decode_text(payload, content_type), context), "image/svg+xml; charset=utf-8"
        if kind is ContentKind.MANIFEST:
            manifest = rewrite_manifest(decode_text(payload, content_type), context)
            return manifest, f"{media_type(content_type)}; charset=utf-8"
        return payload, content_type or "application/octet-stream"

    def _from_cache(self, entry: CacheEntry, request: RelayRequest) -> RelayResult:
        kind = classify_content_type(entry.content_type)
        body, out_type = self.transform(
            kind, entry.payload, entry.content_type, entry.source_url, request.proxy_base
        )
        return RelayResult(
            status_code=200,
            content_type=out_type,
            body=body,
            final_url=entry.source_url,
            cache_status=CacheStatus.HIT,
            content_kind=kind,
            headers=dict(entry.headers),
        )

    def build_upstream_headers(self, method: str, request: RelayRequest) -> dict[str, str]:
        headers = {
            "User-Agent": UPSTREAM_USER_AGENT,
            "Accept": UPSTREAM_ACCEPT,
            "Accept-Language": UPSTREAM_ACCEPT_LANGUAGE,
            # Uncompressed, so the body can be rewritten as text directly
            "Accept-Encoding": "identity",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        }
        cookie = self._cookie_header(request.session_id)
        if cookie:
            headers["Cookie"] = cookie
        if method in BODY_METHODS and request.content_type:
            headers["Content-Type"] = request.content_type
        referer = unwrap_proxy_url(request.referer)
        if referer:
            headers["Referer"] = referer
        return headers

    def build_body(self, method: str, request: RelayRequest) -> dict:
        """httpx keyword arguments carrying the forwarded request body, if any.

        The body goes out byte for byte; form submissions are already encoded
        and keep their field order and charset.
        """
        if method not in BODY_METHODS or not request.body:
            return {}
        return {"content": request.body}

    async def _fetch(
        self, method: str, target_url: str, request: RelayRequest
    ) -> httpx.Response:
        headers = self.build_upstream_headers(method, request)
        body_kwargs = self.build_body(method, request)
        host = urlsplit(target_url).hostname or target_url

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            ) as client:
                outbound = client.build_request(
                    method, target_url, headers=headers, **body_kwargs
                )
                # Hard deadline over the whole exchange, redirects included;
                # the in-flight request is cancelled when it expires.
                response = await asyncio.wait_for(
                    self._send_following_redirects(client, outbound, request.session_id),
                    timeout=self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            UPSTREAM_REQUESTS.labels(outcome="timeout").inc()
            raise UpstreamTimeoutError(
                f"Upstream request to {host} timed out after {self.timeout:g}s"
            ) from e
        except httpx.InvalidURL as e:
            raise ClientInputError(f"Invalid URL: {e}") from e
        except httpx.RequestError as e:
            UPSTREAM_REQUESTS.labels(outcome="transport_error").inc()
            raise UpstreamTransportError(describe_transport_error(e, host)) from e

        UPSTREAM_REQUESTS.labels(outcome="ok").inc()
        logger.debug(
            f"[Relay] Upstream {response.status_code} for {target_url} -> {response.url}"
        )
        return response

    async def _send_following_redirects(
        self, client: httpx.AsyncClient, outbound: httpx.Request, session_id: str
    ) -> httpx.Response:
        """
        Send ``outbound`` and follow redirects up to ``max_redirects``.

        httpx drops an explicit Cookie header on redirect, so the session's
        cookies, including any set by the previous hop, are attached again
        on every hop.
        """
        history = []
        while True:
            response = await client.send(outbound)
            self._record_cookies(session_id, response)
            if response.next_request is None:
                response.history = history
                return response
            if len(history) >= self.max_redirects:
                await response.aclose()
                raise httpx.TooManyRedirects(
                    "Exceeded maximum allowed redirects.", request=outbound
                )
            history.append(response)
            outbound = response.next_request
            cookie = self._cookie_header(session_id)
            if cookie:
                outbound.headers["Cookie"] = cookie
            logger.debug(f"[Relay] Redirect {response.status_code} -> {outbound.url}")

    def _cache_lookup(self, url: str) -> Optional[CacheEntry]:
        try:
            entry = self.cache.get(url)
        except Exception as e:
            log_exception_with_details(logger, "[Cache] Lookup failed:", e, logging.WARNING)
            entry = None
        CACHE_LOOKUPS.labels(result="hit" if entry is not None else "miss").inc()
        return entry

    def _cache_store(
        self,
        url: str,
        payload: bytes,
        content_type: str,
        source_url: str,
        headers: dict[str, str],
    ) -> None:
        try:
            self.cache.put(url, payload, content_type, source_url, headers)
        except Exception as e:
            log_exception_with_details(logger, "[Cache] Store failed:", e, logging.WARNING)

    def _cookie_header(self, session_id: str) -> Optional[str]:
        try:
            return self.cookie_jar.cookie_header_for(session_id)
        except Exception as e:
            log_exception_with_details(logger, "[CookieJar] Lookup failed:", e, logging.WARNING)
            return None

    def _touch_session(self, session_id: str) -> None:
        try:
            self.cookie_jar.touch(session_id)
        except Exception as e:
            log_exception_with_details(logger, "[CookieJar] Touch failed:", e, logging.WARNING)

    def _record_cookies(self, session_id: str, response: httpx.Response) -> None:
        try:
            self.cookie_jar.record_set_cookies(
                session_id, response.headers.get_list("set-cookie")
            )
        except Exception as e:
            log_exception_with_details(logger, "[CookieJar] Update failed:", e, logging.WARNING)
