"""
servectl: Shared configuration (single source of truth).

Paths, settings defaults, settings loading with environment overrides.
Does not import anything from servectl.* except the error types.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import os
import pathlib
import shlex
import sys
from typing import Any, Optional

import portalocker

from servectl.errors import ConfigError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
HOME = pathlib.Path.home()

# Environment variables shared with the supervised server.
HOME_ENV = "SERVECTL_HOME"
SERVER_PORT_ENV = "SERVECTL_SERVER_PORT"

APP_ROOT = pathlib.Path(os.environ.get(HOME_ENV, str(HOME / "ServeCtl"))).expanduser()


def settings_path_for(root: pathlib.Path) -> pathlib.Path:
    return root / "data" / "settings.json"


def pid_file_for(root: pathlib.Path) -> pathlib.Path:
    return root / "tmp" / "server.pid"


def lock_file_for(root: pathlib.Path) -> pathlib.Path:
    return root / "tmp" / "server.lock"


def port_file_for(root: pathlib.Path) -> pathlib.Path:
    return root / "data" / "state" / "server_port"


def log_dir_for(root: pathlib.Path) -> pathlib.Path:
    return root / "data" / "logs"


SETTINGS_PATH = settings_path_for(APP_ROOT)
PORT_FILE = port_file_for(APP_ROOT)
LOG_DIR = log_dir_for(APP_ROOT)


# ---------------------------------------------------------------------------
# Settings defaults
# ---------------------------------------------------------------------------
SETTINGS_DEFAULTS = {
    "SERVECTL_PORT_RANGE_START": 4000,
    "SERVECTL_PORT_RANGE_END": 4099,
    "SERVECTL_HOST": "0.0.0.0",
    "SERVECTL_EXIT_TIMEOUT_SEC": 5.0,
    "SERVECTL_PORT_RELEASE_TIMEOUT_SEC": 5.0,
    "SERVECTL_STARTUP_TIMEOUT_SEC": 5.0,
    "SERVECTL_POLL_INTERVAL_SEC": 0.05,
    "SERVECTL_RESTART_DELAY_SEC": 0.5,
    "SERVECTL_LOCK_TIMEOUT_SEC": 15.0,
    # Empty means "<this python> -m servectl.server"
    "SERVECTL_SERVER_COMMAND": "",
}

SettingsDict = dict[str, Any]

SETTINGS_LOCK_TIMEOUT = 2.0


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------
def load_settings(path: Optional[pathlib.Path] = None, environ: Optional[dict] = None) -> SettingsDict:
    """Defaults, then settings.json, then environment variables of the same name."""
    path = SETTINGS_PATH if path is None else path
    environ = os.environ if environ is None else environ
    settings: SettingsDict = dict(SETTINGS_DEFAULTS)
    if path.exists():
        try:
            with portalocker.Lock(
                str(path), mode="r", timeout=SETTINGS_LOCK_TIMEOUT,
                flags=portalocker.LOCK_SH | portalocker.LOCK_NB, encoding="utf-8",
            ) as fh:
                loaded = json.loads(fh.read())
            if isinstance(loaded, dict):
                settings.update({k: v for k, v in loaded.items() if k in SETTINGS_DEFAULTS})
            else:
                log.warning("Ignoring %s: top level is not an object", path)
        except (OSError, ValueError, portalocker.LockException) as e:
            log.warning("Ignoring unreadable settings file %s: %s", path, e)
    for key in SETTINGS_DEFAULTS:
        val = environ.get(key)
        if val is not None and val != "":
            settings[key] = val
    return settings


# ---------------------------------------------------------------------------
# Typed view
# ---------------------------------------------------------------------------
@dataclasses.dataclass(frozen=True)
class SupervisorConfig:
    root: pathlib.Path
    range_start: int
    range_end: int
    host: str = "0.0.0.0"
    exit_timeout: float = 5.0
    port_release_timeout: float = 5.0
    startup_timeout: float = 5.0
    poll_interval: float = 0.05
    restart_delay: float = 0.5
    lock_timeout: float = 15.0
    server_command: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not (1 <= self.range_start <= 65535 and 1 <= self.range_end <= 65535):
            raise ConfigError(f"Port range {self.range_start}-{self.range_end} outside 1-65535")
        if self.range_start > self.range_end:
            raise ConfigError(f"Port range start {self.range_start} is above end {self.range_end}")
        for name in ("exit_timeout", "port_release_timeout", "startup_timeout",
                     "restart_delay", "lock_timeout"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ConfigError(f"{name} must be a finite number")
            if value < 0:
                raise ConfigError(f"{name} must not be negative")
        if not math.isfinite(self.poll_interval) or self.poll_interval <= 0:
            raise ConfigError("poll_interval must be a positive finite number")
        if not self.server_command:
            object.__setattr__(self, "server_command", (sys.executable, "-m", "servectl.server"))

    @property
    def pid_file(self) -> pathlib.Path:
        return pid_file_for(self.root)

    @property
    def lock_file(self) -> pathlib.Path:
        return lock_file_for(self.root)

    @property
    def port_file(self) -> pathlib.Path:
        return port_file_for(self.root)

    @property
    def log_dir(self) -> pathlib.Path:
        return log_dir_for(self.root)

    @classmethod
    def from_settings(cls, settings: SettingsDict, root: Optional[pathlib.Path] = None) -> "SupervisorConfig":
        try:
            command = settings.get("SERVECTL_SERVER_COMMAND") or ""
            if isinstance(command, str):
                command = shlex.split(command)
            return cls(
                root=APP_ROOT if root is None else root,
                range_start=int(settings["SERVECTL_PORT_RANGE_START"]),
                range_end=int(settings["SERVECTL_PORT_RANGE_END"]),
                host=str(settings["SERVECTL_HOST"]),
                exit_timeout=float(settings["SERVECTL_EXIT_TIMEOUT_SEC"]),
                port_release_timeout=float(settings["SERVECTL_PORT_RELEASE_TIMEOUT_SEC"]),
                startup_timeout=float(settings["SERVECTL_STARTUP_TIMEOUT_SEC"]),
                poll_interval=float(settings["SERVECTL_POLL_INTERVAL_SEC"]),
                restart_delay=float(settings["SERVECTL_RESTART_DELAY_SEC"]),
                lock_timeout=float(settings["SERVECTL_LOCK_TIMEOUT_SEC"]),
                server_command=tuple(str(part) for part in command),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings: {e}") from e
