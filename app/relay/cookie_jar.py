import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from app.utils import mask_token
from app.vars import COOKIE_MAX_AGE

logger = logging.getLogger("uvicorn.error")


@dataclass
class BrowsingSession:
    cookies: str
    touched_at: float


class SessionCookieJar:
    """
    Accumulates server-set cookies per browsing session.

    Sessions are created lazily on first use, refreshed on every request
    and removed by ``sweep_idle`` once idle for longer than ``max_idle``.
    """

    def __init__(
        self,
        max_idle: float = COOKIE_MAX_AGE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_idle = max_idle
        self._clock = clock
        self._sessions: dict[str, BrowsingSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def cookie_header_for(self, session_id: str) -> Optional[str]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.cookies:
                return None
            return session.cookies

    def touch(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                self._sessions[session_id] = BrowsingSession("", self._clock())
            else:
                session.touched_at = self._clock()

    def record_set_cookies(self, session_id: str, set_cookie_values: Iterable[str]) -> None:
        """
        Append the name=value pair of each Set-Cookie value to the session.

        Attributes after the first ``;`` are dropped. Duplicate names are not
        collapsed; later values simply follow earlier ones.
        """
        pairs = []
        for value in set_cookie_values:
            pair = value.split(";", 1)[0].strip()
            if pair:
                pairs.append(pair)
        if not pairs:
            self.touch(session_id)
            return

        new_cookies = "; ".join(pairs)
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.cookies:
                cookies = new_cookies
            else:
                cookies = f"{session.cookies}; {new_cookies}"
            self._sessions[session_id] = BrowsingSession(cookies, self._clock())
        logger.debug(
            mask_token(
                f"[CookieJar] Recorded {len(pairs)} cookie(s) for session {session_id}",
                session_id,
            )
        )

    def sweep_idle(self) -> int:
        """Remove sessions idle for longer than ``max_idle``. Returns the number removed."""
        with self._lock:
            now = self._clock()
            idle = [
                sid
                for sid, session in self._sessions.items()
                if now - session.touched_at > self.max_idle
            ]
            for sid in idle:
                del self._sessions[sid]
        if idle:
            logger.info(f"[CookieJar] Expired {len(idle)} idle session(s)")
        return len(idle)
