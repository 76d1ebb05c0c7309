"""
Settings for the relay and the client.

Values come from ``settings.local.yaml`` (or the file named by
STUDENTHUB_SETTINGS) with environment variables taking precedence:

    STUDENTHUB_SERVER_URL - Base HTTP url of the relay (default: http://localhost:8080)
    HOST                  - Interface the relay binds (default: 0.0.0.0)
    PORT                  - Relay port (default: 8080)
    STUDENTHUB_SEED       - Load demo users on startup when set to 1/true/yes
    LOG_LEVEL             - Logging level (default: INFO)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import yaml

log = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8080"
DEFAULT_PORT = 8080
DEFAULT_PING_INTERVAL = 30.0
SETTINGS_FILE = "settings.local.yaml"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff for the client: base_delay * 2 ** (attempt - 1)."""
    base_delay: float = 1.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)


def settings_path() -> Path:
    return Path(os.environ.get("STUDENTHUB_SETTINGS", SETTINGS_FILE))


def get_settings(path: Optional[Path] = None) -> dict:
    """Load settings from yaml."""
    path = Path(path) if path else settings_path()
    if not path.exists():
        return {}

    try:
        conf = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        log.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return {}

    if not isinstance(conf, dict):
        log.warning("Ignoring settings file %s: top level is not a mapping", path)
        return {}
    return conf


def _messaging(conf: Optional[dict]) -> dict:
    conf = get_settings() if conf is None else conf
    return conf.get("messaging") or {}


def get_server_url(conf: Optional[dict] = None) -> str:
    if "STUDENTHUB_SERVER_URL" in os.environ:
        return os.environ["STUDENTHUB_SERVER_URL"].rstrip("/")
    return str(_messaging(conf).get("server_url", DEFAULT_SERVER_URL)).rstrip("/")


def get_relay_url(conf: Optional[dict] = None) -> str:
    """WebSocket url of the relay, derived from the server url."""
    parts = urlsplit(get_server_url(conf))
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


def get_host(conf: Optional[dict] = None) -> str:
    return os.environ.get("HOST") or str(_messaging(conf).get("host", "0.0.0.0"))


def get_port(conf: Optional[dict] = None) -> int:
    if "PORT" in os.environ:
        return int(os.environ["PORT"])
    return int(_messaging(conf).get("port", DEFAULT_PORT))


def get_ping_interval(conf: Optional[dict] = None) -> float:
    return float(_messaging(conf).get("ping_interval", DEFAULT_PING_INTERVAL))


def get_reconnect_policy(conf: Optional[dict] = None) -> ReconnectPolicy:
    reconnect = _messaging(conf).get("reconnect") or {}
    defaults = ReconnectPolicy()
    return ReconnectPolicy(
        base_delay=float(reconnect.get("base_delay", defaults.base_delay)),
        max_attempts=int(reconnect.get("max_attempts", defaults.max_attempts)),
    )


def is_seed_enabled(conf: Optional[dict] = None) -> bool:
    if "STUDENTHUB_SEED" in os.environ:
        return os.environ["STUDENTHUB_SEED"].lower() in ("1", "true", "yes")
    return bool(_messaging(conf).get("seed_sample_data", False))


def get_log_level(conf: Optional[dict] = None) -> str:
    if "LOG_LEVEL" in os.environ:
        return os.environ["LOG_LEVEL"].upper()
    conf = get_settings() if conf is None else conf
    return str((conf.get("logging") or {}).get("level", "INFO")).upper()


def setup_logging(level: str = "INFO"):
    """Attach a stream handler to the package logger."""
    logger = logging.getLogger("studenthub_msg")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))
        logger.addHandler(handler)
    return logger
