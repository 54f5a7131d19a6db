class TestSessionCookieJar:
    """Per-session accumulation of server-set cookies."""

    def test_unknown_session_has_no_cookies(self, cookie_jar):
        assert cookie_jar.cookie_header_for("nobody") is None

    def test_attributes_are_stripped(self, cookie_jar):
        cookie_jar.record_set_cookies(
            "abc", ["sid=1; Path=/; HttpOnly; Secure", "theme=dark; Max-Age=3600"]
        )
        assert cookie_jar.cookie_header_for("abc") == "sid=1; theme=dark"

    def test_cookies_accumulate_without_dedup(self, cookie_jar):
        cookie_jar.record_set_cookies("abc", ["sid=1"])
        cookie_jar.record_set_cookies("abc", ["csrf=xyz", "sid=2"])
        assert cookie_jar.cookie_header_for("abc") == "sid=1; csrf=xyz; sid=2"

    def test_sessions_are_isolated(self, cookie_jar):
        cookie_jar.record_set_cookies("a", ["sid=1"])
        cookie_jar.record_set_cookies("b", ["sid=2"])
        assert cookie_jar.cookie_header_for("a") == "sid=1"
        assert cookie_jar.cookie_header_for("b") == "sid=2"

    def test_empty_values_only_touch(self, cookie_jar):
        cookie_jar.record_set_cookies("abc", ["", "  ; Path=/"])
        assert len(cookie_jar) == 1
        assert cookie_jar.cookie_header_for("abc") is None

    def test_touch_creates_session_lazily(self, cookie_jar):
        cookie_jar.touch("abc")
        assert len(cookie_jar) == 1
        assert cookie_jar.cookie_header_for("abc") is None

    def test_idle_sessions_are_swept(self, cookie_jar, fake_clock):
        cookie_jar.record_set_cookies("idle", ["sid=1"])
        cookie_jar.record_set_cookies("active", ["sid=2"])
        fake_clock.advance(500)
        cookie_jar.touch("active")
        fake_clock.advance(200)

        assert cookie_jar.sweep_idle() == 1
        assert cookie_jar.cookie_header_for("idle") is None
        assert cookie_jar.cookie_header_for("active") == "sid=2"

    def test_touch_keeps_cookies(self, cookie_jar, fake_clock):
        cookie_jar.record_set_cookies("abc", ["sid=1"])
        fake_clock.advance(599)
        cookie_jar.touch("abc")
        fake_clock.advance(599)
        assert cookie_jar.sweep_idle() == 0
        assert cookie_jar.cookie_header_for("abc") == "sid=1"
