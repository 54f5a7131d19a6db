# Ensure tests import modules from this service directory first, so that
# `import app.server` and `from app.relay import ...` behave consistently.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from app.relay.content_cache import ContentCache  # noqa: E402
from app.relay.cookie_jar import SessionCookieJar  # noqa: E402
from app.relay.url_resolver import build_proxy_base  # noqa: E402

PROXY_ORIGIN = "http://proxy.test"


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def content_cache(fake_clock):
    """Small cache so eviction is easy to trigger."""
    return ContentCache(max_size=1024, max_item_size=512, ttl=60, clock=fake_clock)


@pytest.fixture
def cookie_jar(fake_clock):
    return SessionCookieJar(max_idle=600, clock=fake_clock)


@pytest.fixture
def proxy_base():
    return build_proxy_base(PROXY_ORIGIN, "abc", "/browse")
