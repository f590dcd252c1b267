"""
Configuration.

Two YAML files, both optional:
- default.yaml: daemon timings (read once at startup)
- bin/server.yaml: how to reach the host's delivery endpoint. Operators
  edit it while the daemon runs, so it's re-read whenever its
  modification time changes.

Example bin/server.yaml:

    Opdirect:
      host: 127.0.0.1
      port: 9334
      method: POST
      path: /TBD
"""

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

import yaml

from outpost_forms.domain.constants import (
    IDLE_SHUTDOWN_SECONDS,
    LOCALHOST,
    OPEN_MAX_RETRIES,
    OPEN_RETRY_DELAY_SECONDS,
    QUIET_LIMIT_SECONDS,
    SNAPSHOT_RETENTION_SECONDS,
    SUBMIT_TIMEOUT_SECONDS,
    SWEEP_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SETTINGS: dict[str, Any] = {
    "Opdirect": {
        "host": LOCALHOST,
        "port": 9334,
        "method": "POST",
        "path": "/TBD",
    }
}

# =============================================================================
# Daemon Configuration
# =============================================================================


def load_config(config_path: Path) -> dict:
    """
    Load default.yaml.

    Returns:
        config dict ({} if the file is missing or empty)
    """
    if not config_path.exists():
        return {}

    with open(config_path, encoding="utf-8") as f:
        data: dict[Any, Any] | None = yaml.safe_load(f)
        return data or {}


@dataclass
class DaemonConfig:
    """Timings, in seconds."""
    sweep_interval: float = SWEEP_INTERVAL_SECONDS
    quiet_limit: float = QUIET_LIMIT_SECONDS
    idle_shutdown: float = IDLE_SHUTDOWN_SECONDS
    snapshot_retention: float = SNAPSHOT_RETENTION_SECONDS
    submit_timeout: float = SUBMIT_TIMEOUT_SECONDS
    open_max_retries: int = OPEN_MAX_RETRIES
    open_retry_delay: float = OPEN_RETRY_DELAY_SECONDS

    @classmethod
    def from_config(cls, config: dict) -> "DaemonConfig":
        daemon = config.get("daemon", {})
        submit = config.get("submit", {})
        client = config.get("client", {})
        return cls(
            sweep_interval=float(daemon.get("sweep_interval", SWEEP_INTERVAL_SECONDS)),
            quiet_limit=float(daemon.get("quiet_limit", QUIET_LIMIT_SECONDS)),
            idle_shutdown=float(daemon.get("idle_shutdown", IDLE_SHUTDOWN_SECONDS)),
            snapshot_retention=float(
                daemon.get("snapshot_retention", SNAPSHOT_RETENTION_SECONDS)
            ),
            submit_timeout=float(submit.get("timeout", SUBMIT_TIMEOUT_SECONDS)),
            open_max_retries=int(client.get("max_retries", OPEN_MAX_RETRIES)),
            open_retry_delay=float(client.get("retry_delay", OPEN_RETRY_DELAY_SECONDS)),
        )


# =============================================================================
# Cached File Value
# =============================================================================


class CachedFileValue(Generic[T]):
    """
    A value computed from a file, recomputed when the file's mtime changes.

    The mtime is the invalidation key. A missing file yields default.
    """

    def __init__(self, path: Path, load: Callable[[Path], T], default: T):
        self.path = path
        self._load = load
        self._default = default
        self._value: T = default
        self._key: float | None = None

    def get(self) -> T:
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            if self._key is not None:
                logger.info(f"{self.path} is gone; using defaults")
            self._key = None
            self._value = self._default
            return self._value

        if mtime != self._key:
            self._value = self._load(self.path)
            self._key = mtime
        return self._value

    def invalidate(self) -> None:
        self._key = None


def merge(a: Any, b: Any) -> Any:
    """Deep merge: values in b override values in a."""
    if b is None:
        return a
    if not isinstance(a, dict) or not isinstance(b, dict):
        return b
    result = dict(a)
    for key, value in b.items():
        result[key] = merge(a.get(key), value)
    return result


def _load_settings(path: Path) -> dict[str, Any]:
    """Parse bin/server.yaml over the defaults; malformed → defaults."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"expected a mapping, found {type(data).__name__}")
        settings = merge(copy.deepcopy(DEFAULT_SETTINGS), data or {})
        opdirect = settings.get("Opdirect")
        if not isinstance(opdirect, dict):
            raise ValueError("Opdirect must be a mapping")
        opdirect["port"] = int(opdirect["port"])
    except (OSError, yaml.YAMLError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring {path}: {e}")
        return copy.deepcopy(DEFAULT_SETTINGS)

    logger.info(f"settings = {settings}")
    return settings


# =============================================================================
# Delivery Endpoint Settings
# =============================================================================


@dataclass
class DeliveryEndpoint:
    """The Opdirect section."""
    host: str
    port: int
    method: str
    path: str

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"


class SettingsCache:
    """
    Delivery settings, reloaded lazily when bin/server.yaml changes.

    Usage:
        settings = SettingsCache(paths.settings_file)
        endpoint = settings.endpoint()
    """

    def __init__(self, path: Path):
        self._cached = CachedFileValue(path, _load_settings, DEFAULT_SETTINGS)

    @property
    def path(self) -> Path:
        return self._cached.path

    def get(self) -> dict[str, Any]:
        return self._cached.get()

    def endpoint(self) -> DeliveryEndpoint:
        opdirect = self.get()["Opdirect"]
        return DeliveryEndpoint(
            host=str(opdirect["host"]),
            port=int(opdirect["port"]),
            method=str(opdirect["method"]).upper(),
            path=str(opdirect["path"]),
        )
