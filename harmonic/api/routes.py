import logging
from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from harmonic.config import PLACEHOLDER_KEY, Settings
from harmonic.kernel.memory_store import CAP, Entry, LocalStore, MemoryStore, Rejected
from harmonic.kernel.notify import NotificationHub, sse_stream
from harmonic.kernel.presence import PresenceTracker
from harmonic.kernel.score_engine import compute_response, hue_for

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__, url_prefix="/")


class Backend:
    """What one running service owns: store, notification hub, presence set."""

    def __init__(self, settings: Settings, store: MemoryStore, hub: NotificationHub,
                 presence: PresenceTracker, keepalive: float = 15.0):
        self.settings = settings
        self.store = store
        self.hub = hub
        self.presence = presence
        self.keepalive = keepalive
        key = settings.store_key
        self.access_key = key if key and key != PLACEHOLDER_KEY else ""

    def publish_presence(self, count: int) -> None:
        self.hub.publish(self.settings.presence_topic, {"type": "presence", "count": count})

    def close(self) -> None:
        self.hub.close()


def init_routes(app, settings: Settings = None, store: MemoryStore = None,
                hub: NotificationHub = None, presence: PresenceTracker = None,
                keepalive: float = 15.0) -> Backend:
    settings = settings or Settings()
    backend = Backend(
        settings,
        store if store is not None else LocalStore(CAP),
        hub if hub is not None else NotificationHub(),
        presence if presence is not None else PresenceTracker(settings.presence_timeout),
        keepalive=keepalive,
    )
    if backend.presence.on_change is None:
        backend.presence.on_change = backend.publish_presence
    app.extensions["harmonic"] = backend
    app.register_blueprint(bp)
    return backend


def _backend() -> Backend:
    return current_app.extensions["harmonic"]


def _error(message: str, status: int):
    return jsonify({"ok": False, "error": message}), status


@bp.before_request
def check_key():
    if not request.path.startswith("/api/"):
        return None
    expected = _backend().access_key
    if not expected:
        return None
    auth = request.headers.get("Authorization", "")
    given = request.headers.get("apikey") or (auth[7:] if auth.startswith("Bearer ") else "")
    if given != expected:
        return _error("unauthorized", 401)
    return None


# ---------- health / version ----------
@bp.route("/health")
def health():
    return jsonify({"ok": True})

@bp.route("/version")
def version():
    return jsonify({"name": "HarmonicMemory", "api": 1, "cap": CAP})


# ---------- harmonic memory ----------
@bp.route("/api/harmonic-memory", methods=["GET"])
def list_memory():
    order = request.args.get("order", "timestamp-desc")
    if order not in ("timestamp-desc", "timestamp-asc"):
        return _error(f"unknown order {order}", 400)
    try:
        limit = int(request.args.get("limit", CAP))
    except ValueError:
        return _error("limit must be an integer", 400)
    entries = _backend().store.list_recent(max(0, limit))
    if order == "timestamp-asc":
        entries.reverse()
    return jsonify([e.to_dict() for e in entries])

@bp.route("/api/harmonic-memory", methods=["POST"])
def add_memory():
    data = request.get_json(force=True, silent=True)
    backend = _backend()
    try:
        stored = backend.store.append(Entry.from_dict(data))
    except Rejected as e:
        return _error(str(e), 400)
    backend.hub.publish(backend.settings.feed_topic, {"type": "insert", "entry": stored.to_dict()})
    logger.debug("stored entry %s", stored.id)
    return jsonify(stored.to_dict()), 201

@bp.route("/api/harmonic-memory", methods=["DELETE"])
def clear_memory():
    backend = _backend()
    backend.store.clear_all()
    backend.hub.publish(backend.settings.feed_topic, {"type": "clear"})
    logger.info("harmonic memory cleared")
    return jsonify({"message": "Harmonic memory cleared"})


# ---------- scoring ----------
@bp.route("/api/resonance", methods=["POST"])
def resonance():
    data = request.get_json(force=True, silent=True) or {}
    intent, tone = data.get("intent", ""), data.get("tone", "Neutral")
    if not isinstance(intent, str) or not isinstance(tone, str):
        return _error("intent and tone must be strings", 400)
    text, score = compute_response(intent, tone)
    return jsonify({"text": text, "score": score, "hue": hue_for(score)})


# ---------- live stream ----------
@bp.route("/api/stream/<topic>")
def stream(topic):
    backend = _backend()
    if topic not in (backend.settings.feed_topic, backend.settings.presence_topic):
        return _error(f"unknown topic {topic}", 404)
    hub = backend.hub
    sub = hub.subscribe(topic)
    resp = Response(
        stream_with_context(sse_stream(hub, sub, backend.keepalive)),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
    # covers clients that disconnect before the first frame
    resp.call_on_close(lambda: hub.unsubscribe(sub))
    return resp


# ---------- presence ----------
@bp.route("/api/presence", methods=["GET"])
def presence_count():
    return jsonify({"count": _backend().presence.current_count()})

@bp.route("/api/presence/<session_id>/<action>", methods=["POST"])
def presence_event(session_id, action):
    tracker = _backend().presence
    handlers = {"join": tracker.join, "heartbeat": tracker.heartbeat, "leave": tracker.leave}
    if action not in handlers:
        return _error(f"unknown action {action}", 404)
    return jsonify({"count": handlers[action](session_id)})
