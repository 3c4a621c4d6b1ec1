"""
Agent configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/hub-sensor-agent/agent.env (system install)
2) ~/.config/hub-sensor-agent/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)

Configuration is read once at process start; the resulting AgentConfig is passed
explicitly to every session open.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv

CONNECTION_STRING_ENV = "HubConnectionString"

DEFAULT_SENSOR_INTERPRETER = "/usr/bin/python2.7"
DEFAULT_SENSOR_SCRIPT = "/home/pi/code/python/readbmp180/readbmp180.py"
DEFAULT_CPUINFO_PATH = "/proc/cpuinfo"
DEFAULT_TELEMETRY_INTERVAL_MS = 1000 * 60 * 5


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _package_version() -> str:
    try:
        return _pkg_version("hub-sensor-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/hub-sensor-agent/agent.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "hub-sensor-agent" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class AgentConfig:
    connection_string: str
    sensor_interpreter: str
    sensor_script: str
    cpuinfo_path: str
    telemetry_interval_ms: int
    agent_version: str

    def __repr__(self) -> str:
        # connection_string carries the device key
        return (
            f"AgentConfig(sensor_interpreter={self.sensor_interpreter!r}, "
            f"sensor_script={self.sensor_script!r}, cpuinfo_path={self.cpuinfo_path!r}, "
            f"telemetry_interval_ms={self.telemetry_interval_ms}, "
            f"agent_version={self.agent_version!r})"
        )


def load_config(*, dotenv_enabled: bool = True) -> AgentConfig:
    """
    Load config by reading env files and then validating environment variables.

    Returns an immutable AgentConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        # highest priority file first; never override what is already set
        for p in reversed(list(_env_paths())):
            if p.is_file():
                load_dotenv(p, override=False)

    connection_string = _require_env(CONNECTION_STRING_ENV)

    interval_raw = os.getenv("TELEMETRY_INTERVAL_MS", str(DEFAULT_TELEMETRY_INTERVAL_MS))
    interval_ms = _parse_int("TELEMETRY_INTERVAL_MS", interval_raw)
    if interval_ms <= 0:
        raise ConfigError("TELEMETRY_INTERVAL_MS must be > 0")

    return AgentConfig(
        connection_string=connection_string,
        sensor_interpreter=os.getenv("SENSOR_INTERPRETER") or DEFAULT_SENSOR_INTERPRETER,
        sensor_script=os.getenv("SENSOR_SCRIPT") or DEFAULT_SENSOR_SCRIPT,
        cpuinfo_path=os.getenv("CPUINFO_PATH") or DEFAULT_CPUINFO_PATH,
        telemetry_interval_ms=interval_ms,
        agent_version=_package_version(),
    )
