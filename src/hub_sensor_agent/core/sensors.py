"""
Sensor reading via an external measurement process.

The measurement script prints one JSON object on stdout. One process is spawned
per read, with no timeout: a hung script stalls the caller.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

logger = logging.getLogger(__name__)


class SensorReadError(ValueError):
    """Raised when the measurement output is empty, malformed, or not a JSON object."""


def parse_reading(stdout: str) -> dict[str, Any]:
    """Parse measurement output into a reading. Raises SensorReadError."""
    if not stdout or not stdout.strip():
        raise SensorReadError("sensor process produced no output")
    try:
        value = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise SensorReadError(f"sensor output is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise SensorReadError(f"sensor output is a JSON {type(value).__name__}, expected an object")
    return value


def read_sensors(interpreter: str, script: str) -> dict[str, Any]:
    """
    Run `<interpreter> <script>` and parse its stdout.

    Launch and exit-status failures are logged, not raised; whatever stdout was
    captured is still parsed, so the caller sees SensorReadError when nothing
    usable came back.
    """
    cmd = [interpreter, script]
    stdout = ""
    try:
        r = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        stdout = r.stdout or ""
        if r.returncode != 0:
            logger.error(
                "Sensor process exited with %s: %s",
                r.returncode,
                (r.stderr or "").strip() or "<no stderr>",
            )
    except OSError as exc:
        logger.error("Sensor process could not be started (%s): %s", " ".join(cmd), exc)

    return parse_reading(stdout)
