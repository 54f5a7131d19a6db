"""
URL canonicalization and resolution for the relay.

Everything here is a pure function: no configuration is read at call time
except the default proxy path, and nothing is cached.
"""

import re
from typing import Optional
from urllib.parse import parse_qs, quote, unquote, urljoin, urlsplit, urlunsplit

from app.relay.errors import ResolutionError
from app.vars import PROXY_PATH

NON_PROXIABLE_PREFIXES = ("data:", "blob:", "javascript:", "mailto:", "tel:", "about:")
FETCHABLE_SCHEMES = ("http", "https")

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
_ABSOLUTE_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
_ENCODED_TARGET_RE = re.compile(r"^https?%3A", re.IGNORECASE)


def is_proxiable(raw: Optional[str]) -> bool:
    """
    Tell whether a reference should be routed through the proxy.

    Fragment-only references, the non-fetchable schemes (data, blob,
    javascript, mailto, tel, about) and any other non-http(s) scheme are
    never proxied.
    """
    if not raw:
        return False
    value = raw.strip()
    if not value or value.startswith("#"):
        return False
    if value.lower().startswith(NON_PROXIABLE_PREFIXES):
        return False
    if value.startswith("//"):
        return True
    match = _SCHEME_RE.match(value)
    if match and match.group(1).lower() not in FETCHABLE_SCHEMES:
        return False
    return True


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _validated(absolute: str) -> str:
    try:
        parts = urlsplit(absolute)
        parts.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise ResolutionError(f"Malformed URL {absolute!r}: {e}") from e
    if parts.scheme.lower() not in FETCHABLE_SCHEMES or not parts.hostname:
        raise ResolutionError(f"Not an absolute http(s) URL: {absolute!r}")
    return absolute


def resolve(raw: str, base: Optional[str] = None) -> str:
    """
    Resolve a reference found in a document into an absolute URL.

    - ``//host/path`` gets an ``https:`` scheme.
    - ``/path`` is resolved against the origin of ``base``.
    - anything else is resolved relative to ``base`` (RFC 3986 semantics,
      dot segments removed).

    Non-proxiable references are returned unchanged. Raises
    ``ResolutionError`` for input that cannot be resolved.
    """
    if raw is None:
        raise ResolutionError("No URL given")
    value = raw.strip()
    if not value:
        raise ResolutionError("Empty URL")
    if not is_proxiable(value):
        return raw

    if value.startswith("//"):
        absolute = "https:" + value
    elif _SCHEME_RE.match(value):
        absolute = value
    else:
        if not base:
            raise ResolutionError(f"Relative URL {value!r} without a base")
        if value.startswith("/"):
            absolute = urljoin(origin_of(base) + "/", value)
        else:
            absolute = urljoin(base, value)
    return _validated(absolute)


def normalize_target(raw: Optional[str]) -> str:
    """
    Canonicalize the raw ``url`` parameter of an inbound request.

    Adds ``https://`` when no scheme is given, accepts a percent-encoded
    target, and rejects non-http(s) schemes and embedded credentials.
    """
    value = (raw or "").strip()
    if not value:
        raise ResolutionError("Missing url parameter")
    if _ENCODED_TARGET_RE.match(value):
        value = unquote(value)
    if value.startswith("//"):
        value = "https:" + value
    elif not _ABSOLUTE_RE.match(value):
        value = "https://" + value

    try:
        parts = urlsplit(value)
        parts.port
    except ValueError as e:
        raise ResolutionError(f"Invalid URL: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in FETCHABLE_SCHEMES:
        raise ResolutionError(f"Unsupported URL scheme: {parts.scheme}")
    if not parts.hostname:
        raise ResolutionError("Invalid URL: missing host")
    if parts.username is not None or parts.password is not None:
        raise ResolutionError("Invalid URL: embedded credentials are not allowed")

    return urlunsplit(
        (scheme, parts.netloc, parts.path or "/", parts.query, parts.fragment)
    )


def build_proxy_base(
    proxy_origin: str, session_id: str, proxy_path: str = PROXY_PATH
) -> str:
    """Prefix every rewritten reference starts with: ``<origin><path>?session=<id>&url=``."""
    return f"{proxy_origin.rstrip('/')}{proxy_path}?session={quote(session_id, safe='')}&url="


def to_proxy_url(absolute_url: str, proxy_base: str) -> str:
    # Only RFC 3986 unreserved characters survive, so the result is safe in
    # any quote style and in unquoted CSS url() tokens.
    return proxy_base + quote(absolute_url, safe="")


def unwrap_proxy_url(url: Optional[str], proxy_path: str = PROXY_PATH) -> Optional[str]:
    """Recover the upstream target from a proxied URL, or None if it is not one."""
    if not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.path.endswith(proxy_path):
        return None
    targets = parse_qs(parts.query).get("url")
    return targets[0] if targets else None
