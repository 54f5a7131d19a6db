"""
Helpers for logging relay failures and turning transport errors into
messages a person browsing through the proxy can act on.
"""

import logging
import ssl

import httpx


def _safe_str(obj) -> str:
    """Convert an object to string without letting a broken __str__ escape."""
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, expanding exception groups into one line per sub-exception.

    Never raises, even for exceptions whose string conversion fails or when
    the logger itself misbehaves.
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        sub_exceptions = (
            _safe_get_exceptions(exception) if hasattr(exception, "exceptions") else []
        )

        if sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
                f"{_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{safe_prefix} Exception: {_safe_str(exception)}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        try:
            logger.log(level, f"{prefix} Exception (logging failed)")
        except Exception:
            pass


def _exception_chain(exception: BaseException):
    seen = set()
    current = exception
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def describe_transport_error(exception: Exception, host: str = "") -> str:
    """
    Classify an httpx request failure into a human readable cause.

    Looks through the exception chain for the underlying socket/TLS error
    and falls back to the exception text.
    """
    target = host or "the target server"
    if isinstance(exception, httpx.TooManyRedirects):
        return f"Too many redirects while loading {target}"

    chain = list(_exception_chain(exception))
    text = " ".join(_safe_str(e) for e in chain).lower()

    if any(isinstance(e, ssl.SSLCertVerificationError) for e in chain) or (
        "certificate" in text
    ):
        return f"TLS certificate verification failed for {target}"
    if any(isinstance(e, ssl.SSLError) for e in chain) or "ssl" in text or "tls" in text:
        return f"TLS handshake with {target} failed"
    if (
        "name or service not known" in text
        or "nodename nor servname" in text
        or "getaddrinfo" in text
        or "temporary failure in name resolution" in text
        or "no address associated" in text
    ):
        return f"DNS lookup failed for {target}"
    if any(isinstance(e, ConnectionRefusedError) for e in chain) or "refused" in text:
        return f"Connection refused by {target}"
    if any(isinstance(e, ConnectionResetError) for e in chain) or "reset" in text:
        return f"Connection reset by {target}"
    if isinstance(exception, httpx.RemoteProtocolError):
        return f"{target} closed the connection unexpectedly"
    if isinstance(exception, httpx.ConnectError):
        return f"Could not connect to {target}: {_safe_str(exception)}"
    return f"Upstream request to {target} failed: {_safe_str(exception) or type(exception).__name__}"
