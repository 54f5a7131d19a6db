import json

import pytest

from app.relay.intercept import INTERCEPT_MARKER
from app.relay.rewrite import (
    RewriteContext,
    inject_intercept_script,
    proxify,
    rewrite_css,
    rewrite_css_urls,
    rewrite_html,
    rewrite_manifest,
    rewrite_srcset,
    rewrite_svg,
)
from app.relay.url_resolver import to_proxy_url

PROXY_BASE = "http://proxy.test/browse?session=abc&url="
PAGE_URL = "https://example.com/dir/page.html"


def proxied(url: str) -> str:
    return to_proxy_url(url, PROXY_BASE)


@pytest.fixture
def ctx():
    return RewriteContext.for_document(PAGE_URL, PROXY_BASE)


class TestRewriteContext:
    def test_for_document(self, ctx):
        assert ctx.origin == "https://example.com"
        assert ctx.document_url == PAGE_URL
        assert ctx.proxy_endpoint == "http://proxy.test/browse?"

    def test_rebased(self, ctx):
        rebased = ctx.rebased("https://static.example.com/assets/")
        assert rebased.origin == "https://static.example.com"
        assert rebased.document_url == "https://static.example.com/assets/"
        assert rebased.proxy_base == PROXY_BASE


class TestProxify:
    def test_relative(self, ctx):
        assert proxify("img/a.png", ctx) == proxied("https://example.com/dir/img/a.png")

    def test_decodes_amp_entities(self, ctx):
        assert proxify("/search?a=1&amp;b=2", ctx) == proxied("https://example.com/search?a=1&b=2")

    def test_already_proxied_is_untouched(self, ctx):
        value = proxied("https://example.com/x")
        assert proxify(value, ctx) == value

    def test_unresolvable_is_untouched(self, ctx):
        assert proxify("http://[::1", ctx) == "http://[::1"


class TestRewriteHtml:
    """Attribute, style and markup rewriting of HTML documents."""

    def test_root_relative_link(self, ctx):
        out = rewrite_html('<a href="/about">About</a>', ctx)
        assert f'href="{PROXY_BASE}https%3A%2F%2Fexample.com%2Fabout"' in out

    def test_quote_style_preserved(self, ctx):
        out = rewrite_html("<img src='img/a.png'>", ctx)
        assert f"src='{proxied('https://example.com/dir/img/a.png')}'" in out

    def test_unquoted_value_gets_quoted(self, ctx):
        out = rewrite_html("<img src=a.png alt=x>", ctx)
        assert f'src="{proxied("https://example.com/dir/a.png")}" alt=x>' in out

    def test_attribute_match_is_case_insensitive(self, ctx):
        out = rewrite_html('<IMG SRC="a.png">', ctx)
        assert f'<IMG SRC="{proxied("https://example.com/dir/a.png")}">' in out

    @pytest.mark.parametrize(
        "markup",
        [
            '<a href="#top">',
            '<a href="javascript:void(0)">',
            '<a href="mailto:me@example.com">',
            '<a href="tel:+123">',
            '<img src="data:image/gif;base64,R0lGOD">',
            '<iframe src="about:blank">',
        ],
    )
    def test_non_proxiable_untouched(self, ctx, markup):
        assert markup in rewrite_html(markup, ctx)

    def test_all_url_attributes(self, ctx):
        markup = (
            '<form action="/login"><button formaction="/alt">Go</button></form>'
            '<video poster="/poster.jpg"></video>'
            '<object data="/movie.swf"></object>'
            '<img data-src="/lazy.png" data-original="/orig.png" data-lazy="/l.png">'
            '<td background="/bg.gif">'
        )
        out = rewrite_html(markup, ctx)
        for path in ("login", "alt", "poster.jpg", "movie.swf", "lazy.png", "orig.png", "l.png", "bg.gif"):
            assert proxied(f"https://example.com/{path}") in out

    def test_absolute_cross_origin_reference(self, ctx):
        out = rewrite_html('<script src="https://cdn.example.net/lib.js"></script>', ctx)
        assert f'src="{proxied("https://cdn.example.net/lib.js")}"' in out

    def test_srcset(self, ctx):
        out = rewrite_html('<img srcset="a.png 1x, /b.png 2x">', ctx)
        expected = f'{proxied("https://example.com/dir/a.png")} 1x, {proxied("https://example.com/b.png")} 2x'
        assert f'srcset="{expected}"' in out

    def test_security_attributes_stripped(self, ctx):
        out = rewrite_html(
            '<script src="/app.js" integrity="sha384-abc" crossorigin="anonymous" nonce="n1"></script>'
            '<link rel="stylesheet" href="/s.css" crossorigin>',
            ctx,
        )
        assert "integrity" not in out
        assert "crossorigin" not in out
        assert "nonce" not in out
        assert proxied("https://example.com/app.js") in out

    def test_blocking_meta_removed(self, ctx):
        out = rewrite_html(
            '<head><meta http-equiv="Content-Security-Policy" content="default-src \'self\'">'
            '<meta http-equiv="X-Frame-Options" content="DENY">'
            '<meta charset="utf-8"></head>',
            ctx,
        )
        assert "Content-Security-Policy" not in out
        assert "X-Frame-Options" not in out
        assert '<meta charset="utf-8">' in out

    def test_meta_refresh(self, ctx):
        out = rewrite_html('<meta http-equiv="refresh" content="5; url=/next">', ctx)
        assert f'content="5; url={proxied("https://example.com/next")}"' in out

    def test_inline_style(self, ctx):
        out = rewrite_html("<div style=\"background: url('bg.png')\"></div>", ctx)
        assert f"url('{proxied('https://example.com/dir/bg.png')}')" in out

    def test_inline_style_with_entity_quotes(self, ctx):
        out = rewrite_html('<div style="background:url(&quot;/bg.png&quot;)"></div>', ctx)
        assert f"url(&quot;{proxied('https://example.com/bg.png')}&quot;)" in out

    def test_style_block(self, ctx):
        out = rewrite_html("<style>body{background:url(/bg.png)}</style>", ctx)
        assert f"url({proxied('https://example.com/bg.png')})" in out

    def test_script_body_untouched(self, ctx):
        markup = "<script>var t = \"<a href='/x'>\"; fetch('/api');</script>"
        out = rewrite_html(markup, ctx)
        assert "var t = \"<a href='/x'>\"; fetch('/api');" in out

    def test_comment_untouched(self, ctx):
        out = rewrite_html('<!-- <a href="/hidden"> -->', ctx)
        assert '<!-- <a href="/hidden"> -->' in out

    def test_one_bad_url_does_not_abort(self, ctx):
        out = rewrite_html('<a href="http://[::1">bad</a><a href="/good">good</a>', ctx)
        assert 'href="http://[::1"' in out
        assert proxied("https://example.com/good") in out

    def test_base_href_is_honoured(self, ctx):
        out = rewrite_html(
            '<head><base href="/assets/"></head><body><img src="a.png"><a href="#x">x</a></body>',
            ctx,
        )
        assert proxied("https://example.com/assets/a.png") in out
        assert f'<base href="{proxied("https://example.com/assets/")}">' in out
        assert 'href="#x"' in out

    def test_redirected_document_resolves_against_final_url(self):
        ctx = RewriteContext.for_document("https://www.example.com/home", PROXY_BASE)
        out = rewrite_html('<a href="/about">', ctx)
        assert proxied("https://www.example.com/about") in out

    def test_rewrite_is_idempotent(self, ctx):
        markup = (
            "<html><head><base href='/dir/'><style>a{background:url(x.png)}</style></head>"
            '<body><a href="/a?x=1&amp;y=2">a</a><img src=b.png srcset="c.png 1x, d.png 2x">'
            '<meta http-equiv="refresh" content="0; url=/z"></body></html>'
        )
        once = rewrite_html(markup, ctx)
        assert rewrite_html(once, ctx) == once
        assert once.count(INTERCEPT_MARKER) == 1


class TestInjectInterceptScript:
    SCRIPT = f'<script {INTERCEPT_MARKER}="1"></script>'

    def test_before_head_close(self):
        out = inject_intercept_script("<html><head><title>t</title></head><body></body></html>", self.SCRIPT)
        assert out.index(self.SCRIPT) < out.index("</head>")

    def test_after_body_open(self):
        out = inject_intercept_script('<body class="x"><p>hi</p></body>', self.SCRIPT)
        assert out.startswith(f'<body class="x">{self.SCRIPT}')

    def test_prepended_as_fallback(self):
        assert inject_intercept_script("<p>fragment</p>", self.SCRIPT) == self.SCRIPT + "<p>fragment</p>"

    def test_not_injected_twice(self):
        once = inject_intercept_script("<p>x</p>", self.SCRIPT)
        assert inject_intercept_script(once, self.SCRIPT) == once


class TestRewriteCss:
    @pytest.fixture
    def css_ctx(self):
        return RewriteContext.for_document("https://site.example/styles/main.css", PROXY_BASE)

    def test_import_and_relative_url(self, css_ctx):
        css = '@import "theme.css";\n.a { background: url(../img/x.png); }'
        out = rewrite_css(css, css_ctx)
        assert f'@import "{proxied("https://site.example/styles/theme.css")}";' in out
        assert f"url({proxied('https://site.example/img/x.png')})" in out

    def test_import_url_form(self, css_ctx):
        out = rewrite_css("@import url('print.css') print;", css_ctx)
        assert out == f"@import url('{proxied('https://site.example/styles/print.css')}') print;"

    def test_protocol_relative_font(self, css_ctx):
        out = rewrite_css('@font-face { src: url("//fonts.example/f.woff2"); }', css_ctx)
        assert f'url("{proxied("https://fonts.example/f.woff2")}")' in out

    def test_data_urls_and_empty_untouched(self, css_ctx):
        css = ".a{background:url(data:image/png;base64,AAA)} .b{background:url()}"
        assert rewrite_css(css, css_ctx) == css

    def test_inline_fragment_ignores_imports(self, css_ctx):
        assert rewrite_css_urls('@import "a.css";', css_ctx) == '@import "a.css";'

    def test_inline_fragment_rewrites_urls(self, css_ctx):
        out = rewrite_css_urls("background:url(/bg.png); mask:url('m.svg')", css_ctx)
        assert out == (
            f"background:url({proxied('https://site.example/bg.png')}); "
            f"mask:url('{proxied('https://site.example/styles/m.svg')}')"
        )


class TestRewriteSrcset:
    def test_data_url_commas_kept(self, ctx):
        out = rewrite_srcset("data:image/png;base64,AAA= 1x, b.png 2x", ctx)
        assert out == f"data:image/png;base64,AAA= 1x, {proxied('https://example.com/dir/b.png')} 2x"

    def test_candidates_without_descriptor(self, ctx):
        out = rewrite_srcset("a.png, b.png", ctx)
        assert out == f"{proxied('https://example.com/dir/a.png')}, {proxied('https://example.com/dir/b.png')}"

    def test_width_descriptors(self, ctx):
        out = rewrite_srcset("/s.jpg 480w,\n  /l.jpg 1080w", ctx)
        assert out == f"{proxied('https://example.com/s.jpg')} 480w, {proxied('https://example.com/l.jpg')} 1080w"


class TestRewriteSvg:
    def test_references_rewritten_without_injection(self, ctx):
        svg = (
            '<svg xmlns="http://www.w3.org/2000/svg" xmlns:xlink="http://www.w3.org/1999/xlink">'
            '<use xlink:href="#icon"/><image href="/pic.png"/>'
            '<style>.c{fill:url(#grad)} .d{background:url(/tex.png)}</style></svg>'
        )
        out = rewrite_svg(svg, ctx)
        assert 'xlink:href="#icon"' in out
        assert f'href="{proxied("https://example.com/pic.png")}"' in out
        assert "url(#grad)" in out
        assert proxied("https://example.com/tex.png") in out
        assert 'xmlns="http://www.w3.org/2000/svg"' in out
        assert INTERCEPT_MARKER not in out


class TestRewriteManifest:
    def test_start_url_and_icons(self):
        ctx = RewriteContext.for_document("https://example.com/app/manifest.json", PROXY_BASE)
        manifest = {
            "name": "App",
            "start_url": "/?src=pwa",
            "icons": [{"src": "icons/192.png", "sizes": "192x192"}],
            "screenshots": [{"src": "https://cdn.example.com/s1.png"}],
        }
        out = json.loads(rewrite_manifest(json.dumps(manifest), ctx))
        assert out["name"] == "App"
        assert out["start_url"] == proxied("https://example.com/?src=pwa")
        assert out["icons"][0]["src"] == proxied("https://example.com/app/icons/192.png")
        assert out["icons"][0]["sizes"] == "192x192"
        assert out["screenshots"][0]["src"] == proxied("https://cdn.example.com/s1.png")

    @pytest.mark.parametrize("text", ["{not json", "[1, 2]"])
    def test_unusable_manifest_unchanged(self, ctx, text):
        assert rewrite_manifest(text, ctx) == text
