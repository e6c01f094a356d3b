import os, logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PLACEHOLDER_URL = "https://your-project.supabase.co"
PLACEHOLDER_KEY = "your-anon-key"

DEFAULT_FEED_TOPIC = "harmonic_memory"
DEFAULT_PRESENCE_TOPIC = "harmonic_presence"
DEFAULT_TIMEOUT = 5.0
DEFAULT_PRESENCE_TIMEOUT = 30.0
DEFAULT_PORT = 3001


def _first_env(*names: str) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value.strip()
    return ""


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s '%s'. Falling back to %s.", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Invalid %s '%s'. Must be > 0. Falling back to %s.", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    store_url: str = ""
    store_key: str = ""
    feed_topic: str = DEFAULT_FEED_TOPIC
    presence_topic: str = DEFAULT_PRESENCE_TOPIC
    timeout: float = DEFAULT_TIMEOUT
    presence_timeout: float = DEFAULT_PRESENCE_TIMEOUT
    port: int = DEFAULT_PORT

    @property
    def is_configured(self) -> bool:
        # missing or placeholder values force local-only mode
        if not self.store_url or self.store_url == PLACEHOLDER_URL:
            return False
        if not self.store_key or self.store_key == PLACEHOLDER_KEY:
            return False
        return True

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Read settings from the environment, after loading an optional .env file.

        Values already present in the environment win over the file.
        """
        load_dotenv(env_file, override=False)
        port = _float_env("HARMONIC_PORT", DEFAULT_PORT)
        return cls(
            store_url=_first_env("HARMONIC_STORE_URL", "REACT_APP_SUPABASE_URL").rstrip("/"),
            store_key=_first_env("HARMONIC_STORE_KEY", "REACT_APP_SUPABASE_ANON_KEY"),
            feed_topic=_first_env("HARMONIC_FEED_TOPIC") or DEFAULT_FEED_TOPIC,
            presence_topic=_first_env("HARMONIC_PRESENCE_TOPIC") or DEFAULT_PRESENCE_TOPIC,
            timeout=_float_env("HARMONIC_TIMEOUT", DEFAULT_TIMEOUT),
            presence_timeout=_float_env("HARMONIC_PRESENCE_TIMEOUT", DEFAULT_PRESENCE_TIMEOUT),
            port=int(port),
        )
