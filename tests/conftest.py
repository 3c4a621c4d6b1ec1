"""
Pytest configuration and shared fixtures
"""
import os
import sys
import pytest
from unittest.mock import MagicMock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from hub_sensor_agent.config import AgentConfig  # noqa: E402

# base64("secretkey")
TEST_KEY = "c2VjcmV0a2V5"
TEST_CONNECTION_STRING = f"HostName=test-hub.azure-devices.net;DeviceId=pi-01;SharedAccessKey={TEST_KEY}"


@pytest.fixture
def connection_string():
    return TEST_CONNECTION_STRING


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'HubConnectionString': TEST_CONNECTION_STRING,
        'SENSOR_INTERPRETER': '/usr/bin/python3',
        'SENSOR_SCRIPT': '/opt/sensors/read.py',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def agent_cfg(tmp_path):
    """Immutable agent config pointing at a temporary cpuinfo file"""
    return AgentConfig(
        connection_string=TEST_CONNECTION_STRING,
        sensor_interpreter='/usr/bin/python3',
        sensor_script='/opt/sensors/read.py',
        cpuinfo_path=str(tmp_path / 'cpuinfo'),
        telemetry_interval_ms=300000,
        agent_version='1.0.0-test',
    )


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake that
    acknowledges the connection as soon as the network loop starts and
    every subscription as soon as it is sent.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True

    def _subscribe(topic, qos=0):
        fake.on_subscribe(fake, None, 1, [0], None)
        return (0, 1)

    fake.subscribe.side_effect = _subscribe
    fake.publish.return_value = MagicMock(rc=0, mid=1)
    fake.loop_start.side_effect = lambda: fake.on_connect(fake, None, {}, 0, None)

    def _ctor(*args, **kwargs):
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def sample_cpuinfo():
    """Trimmed /proc/cpuinfo from a Raspberry Pi 3"""
    return (
        "processor\t: 0\n"
        "model name\t: ARMv7 Processor rev 4 (v7l)\n"
        "BogoMIPS\t: 38.40\n"
        "\n"
        "processor\t: 1\n"
        "model name\t: ARMv7 Processor rev 4 (v7l)\n"
        "\n"
        "Hardware\t: BCM2835\n"
        "Revision\t: a02082\n"
        "Serial\t\t: 00000000f2b0c9a1\n"
        "Model\t\t: Raspberry Pi 3 Model B Rev 1.2\n"
    )
