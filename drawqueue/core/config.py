"""Settings read from the environment."""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.drawqueue"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 7860
DEFAULT_CANCEL_TIMEOUT = 5.0
DEFAULT_PROBE_TIMEOUT = 10.0
DEFAULT_PROGRESS_PERSIST_INTERVAL = 2.0
DEFAULT_POLL_INTERVAL = 0.5

PROFILES_FILE = "profiles.json"
QUEUE_FILE = "queue.json"


@dataclass
class Settings:
    data_dir: Path = Path(DEFAULT_DATA_DIR).expanduser()
    log_level: str = DEFAULT_LOG_LEVEL
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cancel_timeout: float = DEFAULT_CANCEL_TIMEOUT
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    progress_persist_interval: float = DEFAULT_PROGRESS_PERSIST_INTERVAL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    connect_on_startup: bool = True
    start_paused: bool = False

    @property
    def profiles_path(self) -> Path:
        return self.data_dir / PROFILES_FILE

    @property
    def queue_path(self) -> Path:
        return self.data_dir / QUEUE_FILE


def load_settings() -> Settings:
    """Build settings from DRAWQUEUE_* environment variables."""
    return Settings(
        data_dir=Path(os.getenv("DRAWQUEUE_DATA_DIR", DEFAULT_DATA_DIR)).expanduser(),
        log_level=os.getenv("DRAWQUEUE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        host=os.getenv("DRAWQUEUE_HOST", DEFAULT_HOST),
        port=_get_number("DRAWQUEUE_PORT", DEFAULT_PORT, int),
        cancel_timeout=_get_number("DRAWQUEUE_CANCEL_TIMEOUT", DEFAULT_CANCEL_TIMEOUT),
        probe_timeout=_get_number("DRAWQUEUE_PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT),
        progress_persist_interval=_get_number(
            "DRAWQUEUE_PROGRESS_PERSIST_INTERVAL", DEFAULT_PROGRESS_PERSIST_INTERVAL
        ),
        poll_interval=_get_number("DRAWQUEUE_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        connect_on_startup=_get_flag("DRAWQUEUE_CONNECT_ON_STARTUP", True),
        start_paused=_get_flag("DRAWQUEUE_START_PAUSED", False),
    )


def _get_number(name: str, default, kind=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = kind(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using {default}")
        return default
    if value < 0:
        logger.warning(f"Negative value for {name}: {raw!r}, using {default}")
        return default
    return value


def _get_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
