import uuid, logging, threading
from collections import deque
from dataclasses import dataclass, replace, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

CAP = 100
MEMORY_PATH = "/api/harmonic-memory"


def now_iso() -> str:
    # fixed width so timestamps sort lexicographically
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class StoreError(Exception):
    kind = "error"


class Unavailable(StoreError):
    kind = "unavailable"


class Unauthorized(StoreError):
    kind = "unauthorized"


class RateLimited(StoreError):
    kind = "rate-limited"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class Rejected(StoreError):
    kind = "rejected"


@dataclass(frozen=True)
class Entry:
    """One submitted resonance: x=intent, y=tone, z=resolution."""
    x: str
    y: str
    z: str
    score: int
    timestamp: str = ""
    id: Optional[str] = None

    def key(self):
        if self.id is not None:
            return ("id", self.id)
        return ("fields", self.x, self.y, self.z, self.score, self.timestamp)

    def stamped(self, timestamp: Optional[str] = None, id: Optional[str] = None) -> "Entry":
        return replace(self, timestamp=timestamp or now_iso(), id=id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Entry":
        if not isinstance(data, dict):
            raise Rejected("entry must be an object")
        try:
            entry = cls(
                x=data["x"], y=data["y"], z=data["z"], score=data["score"],
                timestamp=data.get("timestamp") or "",
                id=None if data.get("id") is None else str(data["id"]),
            )
        except KeyError as e:
            raise Rejected(f"missing field {e.args[0]}") from e
        validate(entry)
        return entry


def validate(entry: Entry) -> None:
    for name in ("x", "y", "z", "timestamp"):
        if not isinstance(getattr(entry, name), str):
            raise Rejected(f"{name} must be a string")
    if isinstance(entry.score, bool) or not isinstance(entry.score, int):
        raise Rejected("score must be an integer")
    if not 0 <= entry.score <= 100:
        raise Rejected(f"score {entry.score} outside [0, 100]")


class MemoryStore:
    """Bounded append-only entry collection: append, list_recent, clear_all."""

    def append(self, entry: Entry) -> Entry:
        raise NotImplementedError

    def list_recent(self, limit: int) -> List[Entry]:
        raise NotImplementedError

    def clear_all(self) -> None:
        raise NotImplementedError


class LocalStore(MemoryStore):
    def __init__(self, cap: int = CAP):
        if cap < 1:
            raise ValueError("cap must be >= 1")
        self.cap = cap
        self._lock = threading.Lock()
        self._entries = deque(maxlen=cap)  # oldest evicted first

    def append(self, entry: Entry) -> Entry:
        validate(entry)
        stored = entry.stamped(now_iso(), uuid.uuid4().hex)
        with self._lock:
            self._entries.append(stored)
        return stored

    def list_recent(self, limit: int) -> List[Entry]:
        if limit <= 0:
            return []
        with self._lock:
            items = list(self._entries)
        items.reverse()
        return items[:limit]

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


class RemoteStore(MemoryStore):
    """HTTP client of the shared backend's /api/harmonic-memory resource."""

    def __init__(self, url: str, key: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.endpoint = url.rstrip("/") + MEMORY_PATH
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": key, "Authorization": f"Bearer {key}"})

    def _request(self, method: str, **kwargs) -> Any:
        try:
            resp = self.session.request(method, self.endpoint, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise Unavailable(str(exc)) from exc
        status = resp.status_code
        if status in (401, 403):
            raise Unauthorized(f"{method} {self.endpoint}: {status}")
        if status == 429:
            retry_after = None
            try:
                retry_after = float(resp.headers.get("Retry-After", ""))
            except ValueError:
                pass
            raise RateLimited(f"{method} {self.endpoint}: throttled", retry_after=retry_after)
        if status >= 500:
            raise Unavailable(f"{method} {self.endpoint}: {status}")
        if status >= 400:
            raise Rejected(f"{method} {self.endpoint}: {status} {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise Rejected(f"{method} {self.endpoint}: unparsable body") from exc

    def append(self, entry: Entry) -> Entry:
        validate(entry)
        body = {"x": entry.x, "y": entry.y, "z": entry.z, "score": entry.score}
        return Entry.from_dict(self._request("POST", json=body))

    def list_recent(self, limit: int) -> List[Entry]:
        if limit <= 0:
            return []
        data = self._request("GET", params={"order": "timestamp-desc", "limit": int(limit)})
        if not isinstance(data, list):
            raise Rejected("expected a list of entries")
        return [Entry.from_dict(d) for d in data][:limit]

    def clear_all(self) -> None:
        self._request("DELETE")

    def close(self):
        self.session.close()
