import json, random, logging, threading
from collections import deque
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .memory_store import Entry, StoreError, Unauthorized

logger = logging.getLogger(__name__)

IDLE = "idle"
CONNECTING = "connecting"
ACTIVE = "active"
RECONNECTING = "reconnecting"
CLOSED = "closed"

STREAM_PATH = "/api/stream"
DEDUP_WINDOW = 256


class Backoff:
    """Bounded exponential backoff with additive jitter."""

    def __init__(self, base: float = 0.5, factor: float = 2.0, max_delay: float = 30.0,
                 jitter: float = 0.5, rng: Optional[random.Random] = None):
        self.base = base
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter
        self.rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        raw = self.base * (self.factor ** max(0, attempt))
        return min(self.max_delay, raw + self.rng.uniform(0, self.jitter))


class SseChannel:
    """
    Server-Sent Events transport for one topic of the shared backend.
    events() yields {"type": "open"} once connected, then one dict per `data:` line,
    and returns when the server ends the stream.
    """

    def __init__(self, url: str, topic: str, key: str, timeout: float = 5.0,
                 read_timeout: float = 60.0, session: Optional[requests.Session] = None):
        self.url = f"{url.rstrip('/')}{STREAM_PATH}/{topic}"
        self.timeout = (timeout, read_timeout)
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": key, "Authorization": f"Bearer {key}",
                                     "Accept": "text/event-stream"})
        self._resp = None

    def events(self) -> Iterator[Dict[str, Any]]:
        resp = self.session.get(self.url, stream=True, timeout=self.timeout)
        self._resp = resp
        try:
            if resp.status_code in (401, 403):
                raise Unauthorized(f"GET {self.url}: {resp.status_code}")
            resp.raise_for_status()
            resp.encoding = "utf-8"  # event streams are always UTF-8
            yield {"type": "open"}
            # small reads so each event is handed over as soon as it arrives
            for line in resp.iter_lines(chunk_size=1, decode_unicode=True):
                if not line or line.startswith(":"):
                    continue
                if not line.startswith("data:"):
                    continue
                try:
                    yield json.loads(line[5:].strip())
                except ValueError:
                    logger.warning("dropping malformed event on %s: %r", self.url, line[:120])
        finally:
            self._resp = None
            resp.close()

    def close(self) -> None:
        resp = self._resp
        if resp is not None:
            resp.close()
        self.session.close()


class Subscription:
    def __init__(self, feed: "LiveFeed", on_insert, on_clear, on_gap=None, on_state=None,
                 on_error=None):
        self._feed = feed
        self.on_insert = on_insert
        self.on_clear = on_clear
        self.on_gap = on_gap
        self.on_state = on_state
        self.on_error = on_error
        self.active = True

    def unsubscribe(self) -> None:
        """Idempotent. No callback runs once this returns."""
        self._feed._remove(self)


class LiveFeed:
    """
    Re-publishes store mutations from a notification channel to local subscribers.

    States: idle -> connecting -> active -> {reconnecting, closed}. Transport
    failures become `reconnecting` plus a backoff wait; they never reach the
    subscribers as exceptions. The channel has no catch-up, so every transition
    to `active` (and every overflow notice) is reported as a possible gap.
    """

    def __init__(self, channel, backoff: Optional[Backoff] = None):
        self.channel = channel
        self.backoff = backoff or Backoff()
        self.state = IDLE
        self._subs: List[Subscription] = []
        self._deliver = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._seen = deque(maxlen=DEDUP_WINDOW)
        self._seen_ids = set()

    # ---------- subscriptions ----------
    def subscribe(self, on_insert: Callable[[Entry], None], on_clear: Callable[[], None],
                  on_gap: Optional[Callable[[], None]] = None,
                  on_state: Optional[Callable[[str], None]] = None,
                  on_error: Optional[Callable[[StoreError], None]] = None) -> Subscription:
        sub = Subscription(self, on_insert, on_clear, on_gap, on_state, on_error)
        with self._deliver:
            if self.state == CLOSED:
                logger.warning("subscribe on a closed live feed; handle is inert")
                sub.active = False
                return sub
            self._subs.append(sub)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="harmonic-live-feed", daemon=True)
                self._thread.start()
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._deliver:
            if not sub.active:
                return
            sub.active = False
            if sub in self._subs:
                self._subs.remove(sub)
            last = not self._subs
        if last:
            self.close()

    def close(self) -> None:
        with self._deliver:
            if self.state == CLOSED:
                return
            for sub in self._subs:
                sub.active = False
            self._subs = []
            self._set_state(CLOSED)
        self._stop.set()
        try:
            self.channel.close()
        except Exception as e:
            logger.debug("channel close failed: %s", e)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        logger.info("live feed closed")

    # ---------- worker ----------
    def _set_state(self, state: str) -> None:
        with self._deliver:
            if self.state == CLOSED or self.state == state:
                return
            self.state = state
            logger.debug("live feed -> %s", state)
            self._each("on_state", state)

    def _each(self, attr: str, *args) -> None:
        for sub in list(self._subs):
            fn = getattr(sub, attr)
            if fn is None or not sub.active:
                continue
            try:
                fn(*args)
            except Exception:
                logger.exception("live feed subscriber %s failed", attr)

    def _seen_before(self, entry_id: str) -> bool:
        if entry_id in self._seen_ids:
            return True
        if len(self._seen) == self._seen.maxlen:
            self._seen_ids.discard(self._seen[0])
        self._seen.append(entry_id)
        self._seen_ids.add(entry_id)
        return False

    def dispatch(self, event: Dict[str, Any]) -> None:
        kind = event.get("type") if isinstance(event, dict) else None
        with self._deliver:
            if self.state == CLOSED:
                return
            if kind == "open":
                self._set_state(ACTIVE)
                self._each("on_gap")
            elif kind == "insert":
                try:
                    entry = Entry.from_dict(event.get("entry"))
                except StoreError as e:
                    logger.warning("dropping malformed insert: %s", e)
                    return
                if entry.id is not None and self._seen_before(entry.id):
                    logger.debug("duplicate insert %s suppressed", entry.id)
                    return
                self._each("on_insert", entry)
            elif kind == "clear":
                self._seen.clear()
                self._seen_ids.clear()
                self._each("on_clear")
            elif kind == "overflow":
                logger.warning("live feed overflowed upstream; reconciling")
                self._each("on_gap")
            else:
                logger.debug("ignoring event %r", kind)

    def _run(self) -> None:
        attempt = 0
        while not self._stop.is_set():
            self._set_state(CONNECTING if attempt == 0 else RECONNECTING)
            try:
                for event in self.channel.events():
                    if self._stop.is_set():
                        break
                    if isinstance(event, dict) and event.get("type") == "open":
                        attempt = 0
                    self.dispatch(event)
            except Unauthorized as e:
                # a rejected credential waits the longest delay
                logger.error("live feed rejected: %s", e)
                with self._deliver:
                    self._each("on_error", e)
                self._set_state(RECONNECTING)
                self._stop.wait(self.backoff.max_delay)
                continue
            except Exception as e:
                if not self._stop.is_set():
                    logger.warning("live feed transport failed: %s", e)
            if self._stop.is_set():
                break
            self._set_state(RECONNECTING)
            delay = self.backoff.delay(attempt)
            attempt += 1
            logger.info("live feed reconnecting in %.2fs (attempt %d)", delay, attempt)
            self._stop.wait(delay)
