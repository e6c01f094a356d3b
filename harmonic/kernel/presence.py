import time, uuid, logging, threading
from typing import Callable, Dict, Optional, Set

import requests

logger = logging.getLogger(__name__)

PRESENCE_PATH = "/api/presence"


class PresenceTracker:
    """
    Set of connected observer sessions.
    A session counts until it leaves or goes `timeout` seconds without a heartbeat.
    Expired sessions are swept on every access.
    """

    def __init__(self, timeout: float = 30.0, clock: Callable[[], float] = time.monotonic,
                 on_change: Optional[Callable[[int], None]] = None):
        self.timeout = float(timeout)
        self.clock = clock
        self.on_change = on_change
        self._lock = threading.Lock()
        self._last_seen: Dict[str, float] = {}

    def _sweep(self, now: float) -> bool:
        expired = [sid for sid, seen in self._last_seen.items() if now - seen > self.timeout]
        for sid in expired:
            del self._last_seen[sid]
        if expired:
            logger.debug("presence expired: %s", expired)
        return bool(expired)

    def _touch(self, session_id: str, present: bool) -> int:
        sid = str(session_id).strip()
        with self._lock:
            now = self.clock()
            changed = self._sweep(now)
            if sid:
                if present:
                    changed = changed or sid not in self._last_seen
                    self._last_seen[sid] = now
                elif self._last_seen.pop(sid, None) is not None:
                    changed = True
            count = len(self._last_seen)
        if changed and self.on_change:
            self.on_change(count)
        return count

    def join(self, session_id: str) -> int:
        return self._touch(session_id, True)

    def heartbeat(self, session_id: str) -> int:
        return self._touch(session_id, True)

    def leave(self, session_id: str) -> int:
        return self._touch(session_id, False)

    def current_count(self) -> int:
        with self._lock:
            changed = self._sweep(self.clock())
            count = len(self._last_seen)
        if changed and self.on_change:
            self.on_change(count)
        return count

    def sessions(self) -> Set[str]:
        with self._lock:
            self._sweep(self.clock())
            return set(self._last_seen)


class RemotePresence:
    """Keeps one session present on the shared backend by heartbeating from a thread."""

    def __init__(self, url: str, key: str, timeout: float = 30.0, request_timeout: float = 5.0,
                 session_id: Optional[str] = None, session: Optional[requests.Session] = None):
        self.base = url.rstrip("/") + PRESENCE_PATH
        self.session_id = session_id or uuid.uuid4().hex
        self.interval = max(0.05, timeout / 3.0)
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": key, "Authorization": f"Bearer {key}"})
        self._count = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _post(self, action: str) -> None:
        url = f"{self.base}/{self.session_id}/{action}"
        try:
            resp = self.session.post(url, timeout=self.request_timeout)
            resp.raise_for_status()
            self._count = int(resp.json().get("count", self._count))
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.warning("presence %s failed: %s", action, e)

    def _run(self):
        while not self._stop.wait(self.interval):
            self._post("heartbeat")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._post("join")
        self._thread = threading.Thread(target=self._run, name="harmonic-presence", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=self.request_timeout + self.interval)
        self._thread = None
        self._post("leave")
        self.session.close()

    def current_count(self) -> int:
        return max(0, self._count)
