"""
Hub Sensor Agent entrypoint.

CLI:
  hub-sensor-agent [run]                 -> report device details, then run telemetry cycles forever
  hub-sensor-agent clear-device-details  -> set deviceDetails to null in the twin's reported properties
  hub-sensor-agent host-facts            -> print the device details gathered from the host (no network)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from importlib.metadata import PackageNotFoundError, version as pkg_version

from hub_sensor_agent.core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    try:
        return pkg_version("hub-sensor-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


def run_agent() -> int:
    """
    Runtime mode: report device details once, then run telemetry cycles.
    Returns process exit code.
    """
    from hub_sensor_agent.config import ConfigError, load_config
    from hub_sensor_agent.core.device_details import report_device_details
    from hub_sensor_agent.core.telemetry import run_telemetry_loop

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    logger.info("============================================================")
    logger.info("Hub Sensor Agent")
    logger.info("Version: %s", get_version_string())
    logger.info("Config: %r", cfg)
    logger.info("============================================================")

    try:
        try:
            report_device_details(cfg)
        except Exception as exc:
            logger.error("Error reporting device details: %s", exc)
            return 1

        # returns only after a session open failed; that ends the agent quietly
        run_telemetry_loop(cfg)
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    finally:
        logger.info("goodbye")


def clear_device_details_cmd() -> int:
    """Open a session, null out deviceDetails, close. Returns process exit code."""
    from hub_sensor_agent.config import ConfigError, load_config
    from hub_sensor_agent.core.device_details import clear_device_details
    from hub_sensor_agent.hub_session import HubError, SessionOpenError, open_session

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    try:
        session = open_session(cfg.connection_string)
    except SessionOpenError as exc:
        logger.error("Session open failed: %s", exc)
        return 1

    try:
        clear_device_details(session)
    except HubError as exc:
        logger.error("Twin unavailable: %s", exc)
        return 1
    finally:
        session.close()
    return 0


def host_facts_cmd() -> int:
    from hub_sensor_agent.config import DEFAULT_CPUINFO_PATH
    from hub_sensor_agent.core.host_facts import collect_host_facts

    path = os.getenv("CPUINFO_PATH") or DEFAULT_CPUINFO_PATH
    try:
        metadata = collect_host_facts(path)
    except OSError as exc:
        logger.error("Cannot read %s: %s", path, exc)
        return 1
    print(json.dumps(metadata.to_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hub-sensor-agent")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd")

    sub.add_parser(
        "run",
        help="Report device details, then publish sensor telemetry forever (default)",
    )
    sub.add_parser(
        "clear-device-details",
        help="Set deviceDetails to null in the device twin's reported properties",
    )
    sub.add_parser("host-facts", help="Print device details gathered from the host as JSON")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd in (None, "run"):
        raise SystemExit(run_agent())

    if args.cmd == "clear-device-details":
        raise SystemExit(clear_device_details_cmd())

    if args.cmd == "host-facts":
        raise SystemExit(host_facts_cmd())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
