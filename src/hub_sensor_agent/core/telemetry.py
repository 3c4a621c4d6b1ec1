"""
Telemetry cycle loop.

Each cycle: open a session -> read the sensor -> publish if a reading came back
-> close the session -> sleep. Sensor and publish failures only cost that cycle;
a session that cannot be opened ends the loop.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from hub_sensor_agent.config import AgentConfig
from hub_sensor_agent.core.sensors import read_sensors
from hub_sensor_agent.hub_session import HubSession, Message, PublishError, SessionOpenError, open_session

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"

SessionFactory = Callable[[str], HubSession]
SensorReader = Callable[[], dict[str, Any]]


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class TelemetryMessage:
    """Capture timestamp merged with the reading; reading keys win on collision."""

    timestamp_ms: int
    reading: dict[str, Any]

    def body(self) -> dict[str, Any]:
        return {"messageTimestamp": self.timestamp_ms, **self.reading}

    def to_json(self) -> str:
        return json.dumps(self.body())

    def to_message(self) -> Message:
        return Message(
            data=self.to_json(),
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
        )


def run_cycle(
    session: HubSession,
    read: SensorReader,
    *,
    clock: Callable[[], int] = now_ms,
) -> bool:
    """
    Read and publish over an already-open session. Returns True if a message
    was accepted by the hub. Never raises for sensor or publish failures.
    """
    reading: Optional[dict[str, Any]] = None
    try:
        reading = read()
        logger.info("Sensor read succeeded")
    except Exception as exc:
        logger.error("Sensor read failed: %s", exc)

    if reading is None:
        return False

    message = TelemetryMessage(timestamp_ms=clock(), reading=reading)
    try:
        session.send_event(message.to_message())
    except PublishError as exc:
        logger.error("Telemetry publish failed: %s", exc)
        return False
    except Exception:
        logger.exception("Telemetry publish failed")
        return False

    logger.info("Telemetry sent to hub")
    return True


def run_telemetry_loop(
    cfg: AgentConfig,
    *,
    session_factory: SessionFactory = open_session,
    read: Optional[SensorReader] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], int] = now_ms,
) -> None:
    """
    Run telemetry cycles forever. Returns only when a session cannot be opened.
    """
    if read is None:
        def read() -> dict[str, Any]:
            return read_sensors(cfg.sensor_interpreter, cfg.sensor_script)

    interval_s = cfg.telemetry_interval_ms / 1000.0
    logger.info("Telemetry loop started (interval %d ms)", cfg.telemetry_interval_ms)

    while True:
        try:
            session = session_factory(cfg.connection_string)
        except SessionOpenError as exc:
            logger.error("Telemetry loop stopping: session open failed: %s", exc)
            return
        logger.info("Telemetry session opened")

        try:
            run_cycle(session, read, clock=clock)
        finally:
            session.close()
            logger.info("Telemetry session closed")

        sleep(interval_s)
