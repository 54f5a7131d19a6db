"""
Client-side navigation interception injected into every relayed HTML page.

The snippet is a fixed template with exactly three interpolated values: the
proxy base, the document origin and the document URL. Each value is embedded
as a JSON string literal with ``<``, ``>`` and ``&`` escaped, so no value can
terminate the string or the surrounding ``<script>`` element.
"""

import json
import re

INTERCEPT_MARKER = "data-relay-intercept"

_PLACEHOLDER_RE = re.compile(r"__(PROXY_BASE|BASE_URL|CURRENT_URL)__")

_TEMPLATE = """<script data-relay-intercept="1">
(function() {
  var PROXY_BASE = __PROXY_BASE__;
  var BASE_URL = __BASE_URL__;
  var CURRENT_URL = __CURRENT_URL__;
  var PROXY_ENDPOINT = PROXY_BASE.split('?')[0];
  var SKIPPED = ['#', 'javascript:', 'data:', 'blob:', 'mailto:', 'tel:', 'about:'];

  function isSkippable(url) {
    if (!url) return true;
    var value = String(url).trim().toLowerCase();
    if (!value) return true;
    for (var i = 0; i < SKIPPED.length; i++) {
      if (value.indexOf(SKIPPED[i]) === 0) return true;
    }
    return false;
  }

  function unwrap(url) {
    if (url.indexOf(PROXY_ENDPOINT + '?') !== 0) return null;
    try {
      return new URL(url).searchParams.get('url');
    } catch (e) {
      return null;
    }
  }

  function toAbsolute(url) {
    var value = String(url).trim();
    var inner = unwrap(value);
    if (inner) return inner;
    if (value.indexOf('//') === 0) return 'https:' + value;
    if (value.charAt(0) === '/') return BASE_URL + value;
    return new URL(value, CURRENT_URL).href;
  }

  function toProxy(url) {
    try {
      return PROXY_BASE + encodeURIComponent(toAbsolute(url));
    } catch (e) {
      return url;
    }
  }

  function isEmbedded() {
    try {
      return window.parent !== window;
    } catch (e) {
      return true;
    }
  }

  function navigate(absoluteUrl) {
    if (isEmbedded()) {
      window.parent.postMessage({ type: 'navigate', url: absoluteUrl }, '*');
    } else {
      window.location.href = PROXY_BASE + encodeURIComponent(absoluteUrl);
    }
  }

  document.addEventListener('click', function(e) {
    var link = e.target && e.target.closest ? e.target.closest('a[href]') : null;
    if (!link) return;
    var href = link.getAttribute('href');
    if (isSkippable(href)) return;
    var absolute;
    try {
      absolute = toAbsolute(href);
    } catch (err) {
      return;
    }
    e.preventDefault();
    e.stopPropagation();
    navigate(absolute);
  }, true);

  document.addEventListener('submit', function(e) {
    var form = e.target;
    if (!form || form.tagName !== 'FORM') return;
    var method = (form.getAttribute('method') || 'GET').toUpperCase();
    if (method === 'DIALOG') return;
    var action = form.getAttribute('action');
    var target;
    try {
      target = toAbsolute(action && action.trim() ? action : CURRENT_URL);
    } catch (err) {
      return;
    }
    e.preventDefault();
    e.stopPropagation();

    var data = new FormData(form);
    if (e.submitter && e.submitter.name) {
      data.append(e.submitter.name, e.submitter.value || '');
    }

    if (method === 'GET') {
      var params = new URLSearchParams();
      data.forEach(function(value, key) {
        if (typeof value === 'string') params.append(key, value);
      });
      var url = new URL(target);
      url.search = params.toString();
      navigate(url.href);
      return;
    }

    var hidden = document.createElement('form');
    hidden.method = 'POST';
    hidden.action = PROXY_BASE + encodeURIComponent(target);
    hidden.style.display = 'none';
    data.forEach(function(value, key) {
      if (typeof value !== 'string') return;
      var input = document.createElement('input');
      input.type = 'hidden';
      input.name = key;
      input.value = value;
      hidden.appendChild(input);
    });
    (document.body || document.documentElement).appendChild(hidden);
    HTMLFormElement.prototype.submit.call(hidden);
  }, true);

  var originalOpen = window.open;
  window.open = function(url, name, features) {
    if (url && !isSkippable(url)) {
      url = toProxy(url);
    }
    return originalOpen.call(window, url, name, features);
  };
})();
</script>"""


def js_string_literal(value: str) -> str:
    """Encode a value as a JavaScript string literal safe inside a <script> element."""
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def render_intercept_script(proxy_base: str, base_url: str, current_url: str) -> str:
    values = {
        "PROXY_BASE": js_string_literal(proxy_base),
        "BASE_URL": js_string_literal(base_url),
        "CURRENT_URL": js_string_literal(current_url),
    }
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], _TEMPLATE)
