import enum, logging, threading
from typing import List, Optional

from .memory_store import Entry, MemoryStore, RateLimited, StoreError, Unavailable
from .score_engine import compute_response

logger = logging.getLogger(__name__)

VIEW_SIZE = 5


class ConnectionState(str, enum.Enum):
    CHECKING = "checking"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    LOCAL_ONLY = "local-only"


class FeedController:
    """
    Wires submit -> score -> store.append -> live feed echo, and keeps the
    displayed view: at most VIEW_SIZE entries, most recent first, one per entry.

    Store, live feed and presence are optional; without a store the controller
    runs local-only and never touches the network. Store errors end here as
    state changes, they are never raised to the caller.
    """

    def __init__(self, store: Optional[MemoryStore] = None, feed=None, presence=None,
                 view_size: int = VIEW_SIZE):
        self.store = store
        self.feed = feed
        self.presence = presence
        self.view_size = view_size
        self.state = ConnectionState.CHECKING
        self.reason: Optional[str] = None
        self.coherence = 0
        self.last_response = ""
        self._lock = threading.RLock()
        self._view: List[Entry] = []
        self._order = {}  # entry key -> arrival number, breaks timestamp ties
        self._arrivals = 0
        self._subscription = None

    # ---------- state ----------
    def _set_state(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        if state != self.state or reason != self.reason:
            logger.info("connection state %s -> %s%s", self.state.value, state.value,
                        f" ({reason})" if reason else "")
        self.state = state
        self.reason = reason

    def _fail(self, err: StoreError) -> None:
        if isinstance(err, RateLimited) and err.retry_after is not None:
            logger.warning("store throttled; retry after %.1fs", err.retry_after)
        if isinstance(err, Unavailable):
            self._set_state(ConnectionState.LOCAL_ONLY, err.kind)
        else:
            self._set_state(ConnectionState.DEGRADED, err.kind)

    # ---------- view ----------
    def view(self) -> List[Entry]:
        with self._lock:
            return list(self._view)

    def _merge(self, entry: Entry) -> bool:
        key = entry.key()
        if any(e.key() == key for e in self._view):
            return False
        self._arrivals += 1
        self._order[key] = self._arrivals
        self._view.append(entry)
        self._view.sort(key=lambda e: (e.timestamp, self._order.get(e.key(), 0)), reverse=True)
        for dropped in self._view[self.view_size:]:
            self._order.pop(dropped.key(), None)
        del self._view[self.view_size:]
        return True

    def _replace(self, entries: List[Entry]) -> None:
        self._view = []
        self._order = {}
        # entries arrive most recent first; merge oldest first so arrival order agrees
        for entry in reversed(entries[: self.view_size]):
            self._merge(entry)

    # ---------- lifecycle ----------
    def bootstrap(self) -> ConnectionState:
        with self._lock:
            if self.store is None:
                logger.info("store not configured; using local state only")
                self._set_state(ConnectionState.LOCAL_ONLY, "not-configured")
                return self.state
            try:
                recent = self.store.list_recent(self.view_size)
            except StoreError as e:
                logger.warning("bootstrap failed, using local state only: %s", e)
                self._fail(e)
            else:
                self._replace(recent)
                self._set_state(ConnectionState.CONNECTED)
        if self.feed is not None and self._subscription is None:
            self._subscription = self.feed.subscribe(
                self.on_live_feed_insert, self.on_live_feed_clear, on_gap=self.on_possible_gap,
                on_error=self.on_live_feed_error)
        if self.presence is not None and hasattr(self.presence, "start"):
            self.presence.start()
        return self.state

    def close(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.unsubscribe()
        if self.presence is not None and hasattr(self.presence, "stop"):
            self.presence.stop()
        if self.store is not None and hasattr(self.store, "close"):
            self.store.close()

    # ---------- operations ----------
    def submit(self, intent: str, tone: str) -> Optional[Entry]:
        if not intent or not intent.strip():
            return None
        text, score = compute_response(intent, tone)
        entry = Entry(x=intent, y=tone, z=text, score=score)
        with self._lock:
            self.last_response, self.coherence = text, score
            if self.store is None:
                local = entry.stamped()
                self._merge(local)
                return local
            try:
                stored = self.store.append(entry)
            except StoreError as e:
                logger.warning("failed to save entry, keeping it local: %s", e)
                local = entry.stamped()
                self._merge(local)
                self._set_state(ConnectionState.DEGRADED, e.kind)
                return local
            # the live feed echo adds it to the view
            self._set_state(ConnectionState.CONNECTED)
            return stored

    def clear_all(self) -> None:
        with self._lock:
            if self.store is not None:
                try:
                    self.store.clear_all()
                    logger.info("harmonic memory cleared")
                    return
                except StoreError as e:
                    logger.warning("clear failed, clearing local view only: %s", e)
                    self._fail(e)
            self._replace([])

    # ---------- live feed callbacks ----------
    def on_live_feed_insert(self, entry: Entry) -> None:
        with self._lock:
            self._merge(entry)

    def on_live_feed_clear(self) -> None:
        with self._lock:
            self._replace([])

    def on_live_feed_error(self, err: StoreError) -> None:
        with self._lock:
            self._fail(err)

    def on_possible_gap(self) -> None:
        if self.store is None:
            return
        with self._lock:
            try:
                recent = self.store.list_recent(self.view_size)
            except StoreError as e:
                logger.warning("reconcile failed, keeping current view: %s", e)
                self._fail(e)
                return
            self._replace(recent)
            self._set_state(ConnectionState.CONNECTED)

    def observer_count(self) -> int:
        if self.presence is None:
            return 1
        return max(0, self.presence.current_count())
