"""
Pattern-driven rewriting of HTML, CSS, srcset values, SVG and web manifests.

Documents are never parsed into a tree. One regular expression walks the
markup and hands each comment, ``<script>`` block, ``<style>`` block and
start tag to a small callback, so malformed markup that matches nothing is
passed through untouched. Every URL-bearing value found on the way is
replaced by its proxied form; a value that cannot be resolved is left as it
was and the rest of the document is still rewritten.
"""

import json
import logging
import re
from dataclasses import dataclass, replace
from urllib.parse import urlsplit

from app.relay.errors import ResolutionError
from app.relay.intercept import INTERCEPT_MARKER, render_intercept_script
from app.relay.url_resolver import (
    is_proxiable,
    origin_of,
    resolve,
    to_proxy_url,
    unwrap_proxy_url,
)

logger = logging.getLogger("uvicorn.error")

URL_ATTRIBUTES = {
    "href",
    "src",
    "action",
    "formaction",
    "poster",
    "data",
    "data-src",
    "data-original",
    "data-lazy",
    "background",
    "xlink:href",
}
SRCSET_ATTRIBUTES = {"srcset", "data-srcset", "imagesrcset"}
STRIPPED_ATTRIBUTES = {"integrity", "nonce", "crossorigin"}
BLOCKING_META_EQUIVS = {
    "content-security-policy",
    "content-security-policy-report-only",
    "x-frame-options",
}

# Body of a start tag; quoted values may contain '>'
_TAG_BODY = r"""(?:"[^"]*"|'[^']*'|[^'">])*"""

_MARKUP_TOKEN_RE = re.compile(
    r"(?P<comment><!--.*?-->)"
    r"|(?P<script_open><script\b" + _TAG_BODY + r">)(?P<script_body>.*?)(?P<script_close></script\s*>)"
    r"|(?P<style_open><style\b" + _TAG_BODY + r">)(?P<style_body>.*?)(?P<style_close></style\s*>)"
    r"|(?P<tag><[a-zA-Z]" + _TAG_BODY + r">)",
    re.IGNORECASE | re.DOTALL,
)
_TAG_NAME_RE = re.compile(r"<([a-zA-Z][^\s/>]*)")
_ATTR_RE = re.compile(
    r"""(?P<lead>\s*)(?P<name>[^\s"'<>/=]+)"""
    r"""(?:(?P<eq>\s*=\s*)(?P<value>"[^"]*"|'[^']*'|[^\s"'>]+))?"""
)
_BASE_TAG_RE = re.compile(r"<base\b" + _TAG_BODY + r">", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_BODY_OPEN_RE = re.compile(r"<body\b" + _TAG_BODY + r">", re.IGNORECASE)

_CSS_URL = (
    r"""url\(\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|&quot;(?P<eq>.*?)&quot;"""
    r"""|(?P<bare>[^"')\s]*))\s*\)"""
)
_CSS_URL_RE = re.compile(_CSS_URL, re.IGNORECASE)
_CSS_REF_RE = re.compile(
    r"""@import\s+(?:"(?P<idq>[^"]*)"|'(?P<isq>[^']*)')|""" + _CSS_URL,
    re.IGNORECASE,
)
_CSS_URL_GROUPS = ("idq", "isq", "dq", "sq", "eq", "bare")

_REFRESH_RE = re.compile(
    r"""^(?P<prefix>\s*\d+(?:\.\d+)?\s*[;,]\s*url\s*=\s*)(?P<q>['"]?)(?P<url>.*?)(?P=q)\s*$""",
    re.IGNORECASE | re.DOTALL,
)


@dataclass(frozen=True)
class RewriteContext:
    """Per-document inputs threaded through every rewrite call."""

    origin: str
    document_url: str
    proxy_base: str

    @classmethod
    def for_document(cls, document_url: str, proxy_base: str) -> "RewriteContext":
        return cls(
            origin=origin_of(document_url),
            document_url=document_url,
            proxy_base=proxy_base,
        )

    @property
    def proxy_endpoint(self) -> str:
        """``<origin><path>?``: the prefix shared by every proxied URL."""
        return self.proxy_base.split("?", 1)[0] + "?"

    def rebased(self, base_url: str) -> "RewriteContext":
        return replace(self, origin=origin_of(base_url), document_url=base_url)


def decode_amp(value: str) -> str:
    """Undo ``&amp;`` double-encoding leaked into a URL value."""
    return value.replace("&amp;", "&")


def is_already_proxied(value: str, context: RewriteContext) -> bool:
    return value.strip().startswith(context.proxy_endpoint)


def proxify(raw: str, context: RewriteContext) -> str:
    """Return the proxied form of one reference, or ``raw`` when it must stay as is."""
    if not is_proxiable(raw):
        return raw
    value = decode_amp(raw.strip())
    if is_already_proxied(value, context):
        return raw
    try:
        absolute = resolve(value, context.document_url)
    except ResolutionError as e:
        logger.debug(f"[Rewrite] Leaving unresolvable URL untouched: {e}")
        return raw
    return to_proxy_url(absolute, context.proxy_base)


def _replace_span(match: re.Match, group: str, replacement: str) -> str:
    whole = match.group(0)
    start = match.start(group) - match.start()
    end = match.end(group) - match.start()
    return whole[:start] + replacement + whole[end:]


def _rewrite_css_match(match: re.Match, context: RewriteContext) -> str:
    groups = match.groupdict()
    for group in _CSS_URL_GROUPS:
        value = groups.get(group)
        if value is not None:
            new_value = proxify(value, context)
            if new_value == value:
                return match.group(0)
            return _replace_span(match, group, new_value)
    return match.group(0)


def rewrite_css_urls(css: str, context: RewriteContext) -> str:
    """Rewrite only the ``url(...)`` tokens of a CSS fragment (inline styles)."""
    return _CSS_URL_RE.sub(lambda m: _rewrite_css_match(m, context), css)


def rewrite_css(css: str, context: RewriteContext) -> str:
    """Rewrite every ``url(...)`` token and ``@import`` target of a stylesheet."""
    return _CSS_REF_RE.sub(lambda m: _rewrite_css_match(m, context), css)


def rewrite_srcset(srcset: str, context: RewriteContext) -> str:
    """
    Rewrite the URL of each image candidate, keeping its width/density descriptor.

    A candidate URL is a run of non-whitespace, so commas inside ``data:``
    URLs do not split it.
    """
    candidates = []
    pos, length = 0, len(srcset)
    while pos < length:
        while pos < length and (srcset[pos].isspace() or srcset[pos] == ","):
            pos += 1
        if pos >= length:
            break
        start = pos
        while pos < length and not srcset[pos].isspace():
            pos += 1
        url = srcset[start:pos]
        descriptor = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            start = pos
            while pos < length and srcset[pos] != ",":
                pos += 1
            descriptor = srcset[start:pos].strip()
        candidates.append((url, descriptor))

    if not candidates:
        return srcset
    rewritten = []
    for url, descriptor in candidates:
        new_url = proxify(url, context)
        rewritten.append(f"{new_url} {descriptor}" if descriptor else new_url)
    return ", ".join(rewritten)


def _rewrite_refresh(content: str, context: RewriteContext) -> str:
    match = _REFRESH_RE.match(content)
    if not match:
        return content
    return _replace_span(match, "url", proxify(match.group("url").strip(), context))


def _attribute_map(attrs_text: str) -> dict:
    attrs = {}
    for m in _ATTR_RE.finditer(attrs_text):
        value = m.group("value")
        if value is None:
            continue
        if value[:1] in ("'", '"'):
            value = value[1:-1]
        attrs.setdefault(m.group("name").lower(), value)
    return attrs


class _MarkupRewriter:
    """One pass over an HTML or SVG document."""

    def __init__(self, context: RewriteContext):
        self.document_context = context
        self.context = context

    def rebase_from(self, markup: str) -> None:
        """Resolve relative references against the document's ``<base href>``, if any."""
        match = _BASE_TAG_RE.search(markup)
        if not match:
            return
        href = _attribute_map(match.group(0)[len("<base"):]).get("href")
        if not href or not is_proxiable(href):
            return
        href = decode_amp(href.strip())
        if is_already_proxied(href, self.context):
            proxy_path = urlsplit(self.context.proxy_base).path
            href = unwrap_proxy_url(href, proxy_path) or ""
        try:
            base_url = resolve(href, self.document_context.document_url)
        except ResolutionError:
            return
        self.context = self.document_context.rebased(base_url)

    def rewrite(self, markup: str) -> str:
        return _MARKUP_TOKEN_RE.sub(self._rewrite_token, markup)

    def _rewrite_token(self, match: re.Match) -> str:
        if match.group("comment") is not None:
            return match.group(0)
        if match.group("script_open") is not None:
            return (
                self._rewrite_tag(match.group("script_open"))
                + match.group("script_body")
                + match.group("script_close")
            )
        if match.group("style_open") is not None:
            return (
                self._rewrite_tag(match.group("style_open"))
                + rewrite_css(match.group("style_body"), self.context)
                + match.group("style_close")
            )
        return self._rewrite_tag(match.group("tag"))

    def _rewrite_tag(self, tag: str) -> str:
        name_match = _TAG_NAME_RE.match(tag)
        if not name_match:
            return tag
        tag_name = name_match.group(1).lower()
        attrs_text = tag[name_match.end():]

        refresh = False
        if tag_name == "meta":
            http_equiv = _attribute_map(attrs_text).get("http-equiv", "").strip().lower()
            if http_equiv in BLOCKING_META_EQUIVS:
                return ""
            refresh = http_equiv == "refresh"

        # <base href> itself resolves against the document URL, not against itself
        context = self.document_context if tag_name == "base" else self.context
        new_attrs = _ATTR_RE.sub(
            lambda m: self._rewrite_attribute(m, context, refresh), attrs_text
        )
        return tag[: name_match.end()] + new_attrs

    def _rewrite_attribute(
        self, match: re.Match, context: RewriteContext, refresh: bool
    ) -> str:
        attr = match.group("name").lower()
        if attr in STRIPPED_ATTRIBUTES:
            return ""
        raw_value = match.group("value")
        if raw_value is None:
            return match.group(0)

        quote = raw_value[0] if raw_value[0] in ("'", '"') else ""
        value = raw_value[1:-1] if quote else raw_value

        if attr in URL_ATTRIBUTES:
            new_value = proxify(value, context)
        elif attr in SRCSET_ATTRIBUTES:
            new_value = rewrite_srcset(value, context)
        elif attr == "style":
            new_value = rewrite_css_urls(value, context)
        elif attr == "content" and refresh:
            new_value = _rewrite_refresh(value, context)
        else:
            return match.group(0)

        if new_value == value:
            return match.group(0)
        # Proxied URLs contain '=' and '&', which an unquoted value cannot hold
        quote = quote or '"'
        return f"{match.group('lead')}{match.group('name')}{match.group('eq')}{quote}{new_value}{quote}"


def inject_intercept_script(html: str, script: str) -> str:
    """
    Insert the snippet before ``</head>``, else after ``<body ...>``, else at
    the very start. Documents that already carry it are returned unchanged.
    """
    if INTERCEPT_MARKER in html:
        return html
    head_close = _HEAD_CLOSE_RE.search(html)
    if head_close:
        return html[: head_close.start()] + script + html[head_close.start():]
    body_open = _BODY_OPEN_RE.search(html)
    if body_open:
        return html[: body_open.end()] + script + html[body_open.end():]
    return script + html


def rewrite_html(html: str, context: RewriteContext) -> str:
    rewriter = _MarkupRewriter(context)
    rewriter.rebase_from(html)
    rewritten = rewriter.rewrite(html)
    script = render_intercept_script(
        context.proxy_base, rewriter.context.origin, rewriter.context.document_url
    )
    return inject_intercept_script(rewritten, script)


def rewrite_svg(svg: str, context: RewriteContext) -> str:
    """Rewrite references in a standalone SVG document; nothing is injected."""
    return _MarkupRewriter(context).rewrite(svg)


def rewrite_manifest(text: str, context: RewriteContext) -> str:
    """Rewrite ``start_url`` and icon/screenshot sources of a web app manifest."""
    try:
        manifest = json.loads(text)
    except ValueError:
        return text
    if not isinstance(manifest, dict):
        return text

    if isinstance(manifest.get("start_url"), str):
        manifest["start_url"] = proxify(manifest["start_url"], context)
    for key in ("icons", "screenshots"):
        items = manifest.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("src"), str):
                item["src"] = proxify(item["src"], context)
    return json.dumps(manifest)
