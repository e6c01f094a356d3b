import json, queue, logging, itertools, threading
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"
HELLO = ": connected\n\n"
_CLOSED = None


class HubSubscription:
    def __init__(self, sub_id: int, topic: str, maxsize: int):
        self.id = sub_id
        self.topic = topic
        self.queue = queue.Queue(maxsize=maxsize)
        self.closed = False


class NotificationHub:
    """
    Per-topic fan-out of change events to connected subscribers.
    - publish: copies the event to every subscriber queue of the topic
    - a subscriber whose queue is full is evicted; it receives an overflow
      notice and its stream ends, so the client reconnects and reconciles
    - subscriber ids come from a counter, never the clock
    """

    def __init__(self, queue_size: int = 256):
        # room for an overflow notice plus the close marker
        self.queue_size = max(2, queue_size)
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._topics: Dict[str, Dict[int, HubSubscription]] = {}

    def subscribe(self, topic: str) -> HubSubscription:
        with self._lock:
            sub = HubSubscription(next(self._ids), topic, self.queue_size)
            self._topics.setdefault(topic, {})[sub.id] = sub
        logger.debug("subscriber %s joined topic %s", sub.id, topic)
        return sub

    def unsubscribe(self, sub: HubSubscription) -> None:
        with self._lock:
            self._drop(sub)

    def _drop(self, sub: HubSubscription) -> None:
        subs = self._topics.get(sub.topic)
        if subs is not None:
            subs.pop(sub.id, None)
            if not subs:
                del self._topics[sub.topic]
        if not sub.closed:
            sub.closed = True
            try:
                sub.queue.put_nowait(_CLOSED)
            except queue.Full:
                pass

    def publish(self, topic: str, event: Dict[str, Any]) -> int:
        delivered = 0
        with self._lock:
            for sub in list(self._topics.get(topic, {}).values()):
                try:
                    sub.queue.put_nowait(event)
                    delivered += 1
                except queue.Full:
                    logger.warning("subscriber %s on %s overflowed; evicting", sub.id, topic)
                    self._evict(sub)
        return delivered

    def _evict(self, sub: HubSubscription) -> None:
        while True:
            try:
                sub.queue.get_nowait()
            except queue.Empty:
                break
        sub.queue.put_nowait({"type": "overflow"})
        self._drop(sub)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._topics.get(topic, {}))
            return sum(len(s) for s in self._topics.values())

    def close(self) -> None:
        with self._lock:
            for subs in list(self._topics.values()):
                for sub in list(subs.values()):
                    self._drop(sub)


def sse_format(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def sse_stream(hub: NotificationHub, sub: HubSubscription, keepalive: float = 15.0) -> Iterator[str]:
    """Yield SSE frames for one subscription until it is closed or the client goes away."""
    try:
        yield HELLO
        while True:
            try:
                event = sub.queue.get(timeout=keepalive)
            except queue.Empty:
                yield KEEPALIVE
                continue
            if event is _CLOSED:
                break
            yield sse_format(event)
    finally:
        hub.unsubscribe(sub)
