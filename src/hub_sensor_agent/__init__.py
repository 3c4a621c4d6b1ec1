"""
Hub Sensor Agent — device agent for a single-board computer.

Reports host details to the device twin once at startup, then samples the
attached sensor on a fixed interval and publishes each reading as telemetry.
"""
