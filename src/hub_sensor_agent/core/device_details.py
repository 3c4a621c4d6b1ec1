"""
Device details reporting to the twin's reported properties.

Runs once at startup: open a session, fetch the twin, collect host facts,
patch `deviceDetails`, close. A rejected patch is logged and otherwise ignored.
"""

from __future__ import annotations

import logging
from typing import Callable

from hub_sensor_agent.config import AgentConfig
from hub_sensor_agent.core.host_facts import DeviceMetadata, collect_host_facts
from hub_sensor_agent.hub_session import HubSession, SessionOpenError, UpdateResult, open_session

logger = logging.getLogger(__name__)

DEVICE_DETAILS_KEY = "deviceDetails"


def build_device_details_patch(metadata: DeviceMetadata) -> dict:
    return {DEVICE_DETAILS_KEY: metadata.to_dict()}


def build_clear_patch() -> dict:
    return {DEVICE_DETAILS_KEY: None}


def report_device_details(
    cfg: AgentConfig,
    *,
    session_factory: Callable[[str], HubSession] = open_session,
    collect: Callable[[], DeviceMetadata] | None = None,
) -> UpdateResult:
    """
    Write host facts to the twin under `deviceDetails`.

    Raises SessionOpenError if no session could be opened; the caller treats
    that as fatal. Twin fetch and host fact errors propagate too. A rejected
    patch does not raise: it is logged and returned in UpdateResult.error.
    """
    if collect is None:
        def collect() -> DeviceMetadata:
            return collect_host_facts(cfg.cpuinfo_path)

    try:
        session = session_factory(cfg.connection_string)
    except SessionOpenError as exc:
        logger.error("Device details: session open failed: %s", exc)
        raise
    logger.info("Device details: session opened")

    try:
        twin = session.get_twin()
        logger.info("Device details: twin fetched")

        metadata = collect()
        logger.info("Device details: host facts loaded")

        result = twin.update_reported(build_device_details_patch(metadata))
        if result.ok:
            logger.info("Device details: reported properties updated (version=%s)", result.version)
        else:
            logger.error("Device details: twin update failed: %s", result.error)
        return result
    finally:
        session.close()
        logger.info("Device details: session closed")


def clear_device_details(session: HubSession) -> UpdateResult:
    """Set `deviceDetails` to null in the reported properties. Never raises for a rejected patch."""
    twin = session.get_twin()
    result = twin.update_reported(build_clear_patch())
    if not result.ok:
        logger.error("Clearing device details failed: %s", result.error)
    else:
        logger.info("Device details cleared")
    return result
