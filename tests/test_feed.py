import time
import threading

import pytest

from harmonic.kernel import live_feed as lf
from harmonic.kernel.feed_controller import ConnectionState, FeedController
from harmonic.kernel.live_feed import Backoff, LiveFeed
from harmonic.kernel.memory_store import Entry, LocalStore, Unauthorized, Unavailable


def wait_for(cond, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


def insert(entry):
    return {"type": "insert", "entry": entry.to_dict()}


def stored(x, i, ts=None):
    return Entry(x=x, y="Neutral", z="z", score=50, timestamp=ts or f"2026-01-01T00:00:{i:02d}.000000+00:00", id=f"id{i}")


class FakeChannel:
    """Plays one scripted batch per connection; the last connection stays open until closed."""

    def __init__(self, *batches):
        self.batches = list(batches)
        self.closed = threading.Event()
        self.connects = 0

    def events(self):
        self.connects += 1
        if not self.batches:
            self.closed.wait(5)
            return
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        for event in batch:
            yield event
        if not self.batches:
            self.closed.wait(5)

    def close(self):
        self.closed.set()


def fast_backoff():
    return Backoff(base=0.001, factor=2.0, max_delay=0.01, jitter=0.0)


# ---------- LiveFeed ----------
def test_feed_delivers_and_suppresses_duplicates():
    a, b = stored("a", 1), stored("b", 2)
    channel = FakeChannel([{"type": "open"}, insert(a), insert(a), insert(b)])
    feed = LiveFeed(channel, fast_backoff())
    got, gaps = [], []
    sub = feed.subscribe(got.append, lambda: None, on_gap=lambda: gaps.append(1))

    assert wait_for(lambda: len(got) == 2)
    assert [e.id for e in got] == ["id1", "id2"]
    assert gaps == [1]
    assert feed.state == lf.ACTIVE

    sub.unsubscribe()
    assert feed.state == lf.CLOSED
    assert channel.closed.is_set()

def test_feed_reconnects_and_signals_gap():
    channel = FakeChannel(
        ConnectionError("boom"),
        [{"type": "open"}, insert(stored("a", 1))],
        [{"type": "open"}, insert(stored("b", 2))],
    )
    feed = LiveFeed(channel, fast_backoff())
    got, gaps, states = [], [], []
    sub = feed.subscribe(got.append, lambda: None, on_gap=lambda: gaps.append(1), on_state=states.append)

    assert wait_for(lambda: len(got) == 2)
    assert wait_for(lambda: len(gaps) == 2)
    assert lf.RECONNECTING in states
    assert channel.connects >= 3
    sub.unsubscribe()

def test_unsubscribe_is_idempotent_and_final():
    feed = LiveFeed(FakeChannel(), fast_backoff())
    got_a, got_b = [], []
    sub_a = feed.subscribe(got_a.append, lambda: None)
    sub_b = feed.subscribe(got_b.append, lambda: None)

    sub_a.unsubscribe()
    sub_a.unsubscribe()
    feed.dispatch(insert(stored("a", 1)))
    assert got_a == []
    assert len(got_b) == 1

    sub_b.unsubscribe()
    feed.dispatch(insert(stored("b", 2)))
    assert len(got_b) == 1
    assert feed.state == lf.CLOSED

def test_feed_contains_subscriber_errors_and_bad_events():
    feed = LiveFeed(FakeChannel(), fast_backoff())

    def broken(entry):
        raise RuntimeError("presentation bug")

    got, cleared = [], []
    feed.subscribe(broken, lambda: None)
    sub = feed.subscribe(got.append, lambda: cleared.append(1))

    feed.dispatch({"type": "insert", "entry": {"x": "missing fields"}})
    feed.dispatch({"type": "mystery"})
    feed.dispatch(insert(stored("a", 1)))
    feed.dispatch({"type": "clear"})
    assert [e.id for e in got] == ["id1"]
    assert cleared == [1]
    feed.close()
    assert not sub.active

def test_backoff_is_bounded():
    b = Backoff(base=0.5, factor=2.0, max_delay=4.0, jitter=0.5)
    delays = [b.delay(n) for n in range(10)]
    assert all(0.5 <= d <= 4.0 for d in delays)
    assert delays[-1] == 4.0


# ---------- FeedController ----------
class FlakyStore(LocalStore):
    def __init__(self, error=None):
        super().__init__()
        self.error = error

    def append(self, entry):
        if self.error:
            raise self.error
        return super().append(entry)

    def list_recent(self, limit):
        if self.error:
            raise self.error
        return super().list_recent(limit)

    def clear_all(self):
        if self.error:
            raise self.error
        super().clear_all()


class EchoFeed:
    """In-process channel: every store mutation is echoed to every controller."""

    def __init__(self):
        self.subs = []

    def subscribe(self, on_insert, on_clear, on_gap=None, on_state=None, on_error=None):
        feed = self

        class Handle:
            def unsubscribe(self):
                if self in feed.subs:
                    feed.subs.remove(self)

        handle = Handle()
        handle.on_insert, handle.on_clear = on_insert, on_clear
        self.subs.append(handle)
        return handle

    def insert(self, entry):
        for sub in list(self.subs):
            sub.on_insert(entry)

    def clear(self):
        for sub in list(self.subs):
            sub.on_clear()


class EchoStore(LocalStore):
    def __init__(self, feed):
        super().__init__()
        self.feed = feed

    def append(self, entry):
        result = super().append(entry)
        self.feed.insert(result)
        return result

    def clear_all(self):
        super().clear_all()
        self.feed.clear()


def test_blank_intent_is_a_no_op():
    store = LocalStore()
    c = FeedController(store)
    c.bootstrap()
    before = (c.state, c.reason, c.coherence)
    assert c.submit("   ", "Trust") is None
    assert c.submit("", "Trust") is None
    assert (c.state, c.reason, c.coherence) == before
    assert c.view() == []
    assert len(store) == 0

def test_submit_relies_on_echo():
    store, feed = LocalStore(), EchoFeed()
    c = FeedController(store, feed)
    assert c.bootstrap() == ConnectionState.CONNECTED

    entry = c.submit("Hello", "Trust")
    assert entry.id is not None
    assert entry.score == 61
    assert c.view() == []

    feed.insert(entry)
    feed.insert(entry)
    assert c.view() == [entry]
    assert c.coherence == 61

def test_unreachable_store_keeps_working_locally():
    c = FeedController(FlakyStore(Unavailable("down")), EchoFeed())
    seen = []
    assert c.bootstrap() == ConnectionState.LOCAL_ONLY
    seen.append(c.state)
    for word in ("one", "two", "three"):
        entry = c.submit(word, "Fear")
        assert entry is not None and entry.id is None
        seen.append(c.state)
    assert [e.x for e in c.view()] == ["three", "two", "one"]
    assert c.state == ConnectionState.DEGRADED
    assert c.reason == "unavailable"
    assert ConnectionState.CONNECTED not in seen

def test_bad_credential_is_degraded():
    c = FeedController(FlakyStore(Unauthorized("401")))
    assert c.bootstrap() == ConnectionState.DEGRADED
    assert c.reason == "unauthorized"

def test_unconfigured_is_local_only():
    c = FeedController()
    assert c.bootstrap() == ConnectionState.LOCAL_ONLY
    assert c.reason == "not-configured"
    c.submit("Hello", "Trust")
    assert len(c.view()) == 1
    assert c.state == ConnectionState.LOCAL_ONLY
    assert c.observer_count() == 1

def test_view_is_capped_and_most_recent_first():
    c = FeedController(LocalStore())
    c.bootstrap()
    entries = [stored(f"e{i}", i) for i in range(8)]
    for e in (entries[3], entries[7], entries[0], entries[5], entries[1], entries[6], entries[2], entries[4]):
        c.on_live_feed_insert(e)
    view = c.view()
    assert len(view) == 5
    assert [e.x for e in view] == ["e7", "e6", "e5", "e4", "e3"]

def test_local_entries_dedup_by_fields():
    c = FeedController()
    local = Entry(x="a", y="Trust", z="z", score=10, timestamp="2026-01-01T00:00:00.000000+00:00")
    c.on_live_feed_insert(local)
    c.on_live_feed_insert(Entry(**local.to_dict()))
    assert len(c.view()) == 1

def test_gap_reconciles_from_store():
    store = LocalStore()
    c = FeedController(store)
    c.bootstrap()
    c.on_live_feed_insert(stored("stale", 1))
    fresh = [store.append(Entry(x=f"f{i}", y="Trust", z="z", score=1)) for i in range(7)]
    c.on_possible_gap()
    assert [e.id for e in c.view()] == [e.id for e in reversed(fresh)][:5]
    assert c.state == ConnectionState.CONNECTED

def test_clear_all_resets_every_observer():
    feed = EchoFeed()
    store = EchoStore(feed)
    one, two = FeedController(store, feed), FeedController(store, feed)
    one.bootstrap()
    two.bootstrap()
    one.submit("Hello", "Trust")
    two.submit("Again", "Fear")
    assert len(one.view()) == 2 and len(two.view()) == 2

    one.clear_all()
    assert store.list_recent(5) == []
    assert one.view() == [] and two.view() == []

def test_close_unsubscribes():
    feed = EchoFeed()
    c = FeedController(LocalStore(), feed)
    c.bootstrap()
    assert len(feed.subs) == 1
    c.close()
    c.close()
    assert feed.subs == []


@pytest.mark.parametrize("error, state", [
    (Unavailable("down"), ConnectionState.LOCAL_ONLY),
    (Unauthorized("nope"), ConnectionState.DEGRADED),
])
def test_failed_clear_resets_local_view(error, state):
    store = FlakyStore()
    c = FeedController(store)
    c.bootstrap()
    c.on_live_feed_insert(stored("a", 1))
    store.error = error
    c.clear_all()
    assert c.view() == []
    assert c.state == state

def test_close_releases_store():
    class ClosingStore(LocalStore):
        closed = 0

        def close(self):
            self.closed += 1

    store, feed = ClosingStore(), EchoFeed()
    c = FeedController(store, feed)
    c.bootstrap()
    c.close()
    assert store.closed == 1
    assert feed.subs == []


# ---------- rejected stream credential ----------
def test_feed_reports_rejected_credential():
    channel = FakeChannel(Unauthorized("401"))
    feed = LiveFeed(channel, fast_backoff())
    errors, states = [], []
    sub = feed.subscribe(lambda e: None, lambda: None, on_state=states.append, on_error=errors.append)

    assert wait_for(lambda: len(errors) == 1)
    assert isinstance(errors[0], Unauthorized)
    assert lf.RECONNECTING in states
    sub.unsubscribe()
    assert feed.state == lf.CLOSED

def test_rejected_stream_degrades_controller():
    feed = LiveFeed(FakeChannel(Unauthorized("401")), fast_backoff())
    c = FeedController(LocalStore(), feed)
    c.bootstrap()
    assert wait_for(lambda: c.state == ConnectionState.DEGRADED)
    assert c.reason == "unauthorized"
    c.close()
    assert feed.state == lf.CLOSED
