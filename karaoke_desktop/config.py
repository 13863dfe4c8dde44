"""
Karaoke Successor Desktop: shared configuration (single source of truth).

Paths, server constants, settings defaults, load/save with file locking.
Does not import anything from karaoke_desktop.* (zero dependency level).
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import pathlib
import sys
from typing import Any, Mapping, Optional

import portalocker

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
HOME = pathlib.Path.home()
APP_ROOT = pathlib.Path(os.environ.get("KARAOKE_APP_ROOT", HOME / "KaraokeSuccessor"))
DATA_DIR = APP_ROOT / "data"
LOG_DIR = DATA_DIR / "logs"
SETTINGS_PATH = DATA_DIR / "settings.json"

# ---------------------------------------------------------------------------
# Server constants
# ---------------------------------------------------------------------------
SERVER_PORT = 3000
PROBE_HOST = "127.0.0.1"
BIND_HOST = "0.0.0.0"
SERVER_URL_TEMPLATE = "http://localhost:{port}"
SERVER_URL = SERVER_URL_TEMPLATE.format(port=SERVER_PORT)

ENV_PREFIX = "KARAOKE_"


# ---------------------------------------------------------------------------
# Settings defaults
# ---------------------------------------------------------------------------
SETTINGS_DEFAULTS = {
    "SERVER_PORT": SERVER_PORT,
    "PROBE_TIMEOUT_SEC": 0.5,
    "POLL_INTERVAL_SEC": 0.5,
    "POLL_MAX_ATTEMPTS": 120,
    "STARTUP_DELAY_SEC": 0.5,
    "TERMINATE_TIMEOUT_SEC": 5.0,
    "RESOURCE_DIR": "",
}

SettingsDict = dict[str, Any]

# A zero timeout turns socket and process waits into non-blocking calls.
STRICTLY_POSITIVE = {"PROBE_TIMEOUT_SEC", "TERMINATE_TIMEOUT_SEC"}


def bundle_root() -> pathlib.Path:
    """Directory holding packaged assets (PyInstaller extracts to _MEIPASS)."""
    if getattr(sys, "frozen", False):
        return pathlib.Path(getattr(sys, "_MEIPASS", pathlib.Path(sys.executable).parent))
    return pathlib.Path(__file__).resolve().parent.parent


# ---------------------------------------------------------------------------
# Load / Save
# ---------------------------------------------------------------------------
def _lock_path(path: pathlib.Path) -> pathlib.Path:
    return pathlib.Path(str(path) + ".lock")


def load_settings(path: pathlib.Path = SETTINGS_PATH) -> SettingsDict:
    settings: SettingsDict = dict(SETTINGS_DEFAULTS)
    if not path.exists():
        return settings
    try:
        with portalocker.Lock(str(_lock_path(path)), timeout=2):
            loaded = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, portalocker.LockException) as e:
        log.warning("Could not read settings from %s: %s", path, e)
        return settings
    if isinstance(loaded, dict):
        settings.update(loaded)
    return settings


def save_settings(settings: SettingsDict, path: pathlib.Path = SETTINGS_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with portalocker.Lock(str(_lock_path(path)), timeout=2):
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(settings, indent=2), encoding="utf-8")
        os.replace(str(tmp), str(path))


def ensure_settings_file(path: pathlib.Path = SETTINGS_PATH) -> bool:
    """Write the defaults on first run so there is a file to edit. Returns True if written."""
    if path.exists():
        return False
    try:
        save_settings(dict(SETTINGS_DEFAULTS), path)
    except (OSError, portalocker.LockException) as e:
        log.warning("Could not write default settings to %s: %s", path, e)
        return False
    log.info("Wrote default settings to %s", path)
    return True


def apply_env_overrides(settings: SettingsDict, environ: Optional[Mapping[str, str]] = None) -> SettingsDict:
    """Overlay KARAOKE_<KEY> environment variables on top of file settings."""
    env = os.environ if environ is None else environ
    merged = dict(settings)
    for key in SETTINGS_DEFAULTS:
        val = env.get(ENV_PREFIX + key)
        if val is not None and val != "":
            merged[key] = val
    return merged


# ---------------------------------------------------------------------------
# Typed view
# ---------------------------------------------------------------------------
def _coerce(key: str, value: Any) -> Any:
    default = SETTINGS_DEFAULTS[key]
    try:
        if isinstance(default, int):
            coerced = int(value)
            if coerced <= 0:
                raise ValueError("must be positive")
            return coerced
        if isinstance(default, float):
            coerced = float(value)
            if coerced <= 0 and key in STRICTLY_POSITIVE:
                raise ValueError("must be positive")
            if coerced < 0:
                raise ValueError("must not be negative")
            return coerced
        return str(value)
    except (TypeError, ValueError) as e:
        log.warning("Invalid value for %s (%r): %s; using %r", key, value, e, default)
        return default


@dataclasses.dataclass(frozen=True)
class SupervisorConfig:
    port: int = SERVER_PORT
    probe_host: str = PROBE_HOST
    bind_host: str = BIND_HOST
    probe_timeout: float = 0.5
    poll_interval: float = 0.5
    poll_max_attempts: int = 120
    startup_delay: float = 0.5
    terminate_timeout: float = 5.0
    resource_dir: Optional[pathlib.Path] = None

    @property
    def url(self) -> str:
        return SERVER_URL_TEMPLATE.format(port=self.port)

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "SupervisorConfig":
        values = {key: _coerce(key, settings.get(key, default))
                  for key, default in SETTINGS_DEFAULTS.items()}
        resource_dir = values["RESOURCE_DIR"]
        return cls(
            port=values["SERVER_PORT"],
            probe_timeout=values["PROBE_TIMEOUT_SEC"],
            poll_interval=values["POLL_INTERVAL_SEC"],
            poll_max_attempts=values["POLL_MAX_ATTEMPTS"],
            startup_delay=values["STARTUP_DELAY_SEC"],
            terminate_timeout=values["TERMINATE_TIMEOUT_SEC"],
            resource_dir=pathlib.Path(resource_dir) if resource_dir else None,
        )


def load_config(path: pathlib.Path = SETTINGS_PATH) -> SupervisorConfig:
    return SupervisorConfig.from_settings(apply_env_overrides(load_settings(path)))
