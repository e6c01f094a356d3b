"""
Harmonic Memory terminal session.

Each input line is `intent | tone` (tone defaults to Neutral). `:clear` clears
the shared memory for every session, `:view` reprints it, `:quit` leaves.
"""
import sys
import logging
from typing import Iterable, TextIO

from harmonic.config import Settings
from harmonic.kernel.feed_controller import ConnectionState, FeedController
from harmonic.kernel.live_feed import LiveFeed, SseChannel
from harmonic.kernel.memory_store import RemoteStore
from harmonic.kernel.presence import RemotePresence
from harmonic.kernel.score_engine import DEFAULT_TONE, hue_for


def build_controller(settings: Settings) -> FeedController:
    if not settings.is_configured:
        return FeedController()
    url, key = settings.store_url, settings.store_key
    store = RemoteStore(url, key, timeout=settings.timeout)
    feed = LiveFeed(SseChannel(url, settings.feed_topic, key, timeout=settings.timeout))
    presence = RemotePresence(url, key, timeout=settings.presence_timeout, request_timeout=settings.timeout)
    return FeedController(store, feed, presence)


def status_line(controller: FeedController) -> str:
    state = controller.state
    if state == ConnectionState.CHECKING:
        return "Checking store connection..."
    if state == ConnectionState.CONNECTED:
        return f"✓ Connected to shared memory ({controller.observer_count()} online)"
    if state == ConnectionState.LOCAL_ONLY and controller.reason == "not-configured":
        return "⚠ Using local storage (store not configured)"
    if state == ConnectionState.LOCAL_ONLY:
        return "✗ Store connection failed - using local storage"
    return f"✗ Store degraded ({controller.reason}) - using local storage"


def render(controller: FeedController) -> str:
    lines = [status_line(controller)]
    if controller.last_response:
        lines.append(f"Resolution (Z): {controller.last_response}")
        lines.append(f"Coherence Score: {controller.coherence}  hue={hue_for(controller.coherence):.2f}")
    view = controller.view()
    if view:
        lines.append("Recent Harmonic Memory")
        for e in view:
            lines.append(f"  X: {e.x} | Y: {e.y} | Z: {e.z}   Score: {e.score}")
    return "\n".join(lines)


def parse_line(line: str):
    intent, _, tone = line.partition("|")
    return intent.strip(), (tone.strip() or DEFAULT_TONE)


def run(controller: FeedController, lines: Iterable[str], out: TextIO = sys.stdout) -> None:
    controller.bootstrap()
    print(render(controller), file=out)
    try:
        for raw in lines:
            line = raw.strip()
            if line == ":quit":
                break
            if line == ":clear":
                controller.clear_all()
            elif line != ":view":
                intent, tone = parse_line(line)
                if controller.submit(intent, tone) is None:
                    continue
            print(render(controller), file=out)
    finally:
        controller.close()


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    level = logging.DEBUG if "--debug" in argv else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run(build_controller(Settings.from_env()), sys.stdin)
    return 0


if __name__ == "__main__":
    sys.exit(main())
