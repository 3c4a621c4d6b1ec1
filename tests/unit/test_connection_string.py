import base64
import hashlib
import hmac
from urllib.parse import unquote_plus

import pytest

from hub_sensor_agent.connection_string import (
    ConnectionStringError,
    generate_sas_token,
    parse_connection_string,
)

KEY = "c2VjcmV0a2V5"


def test_parse_device_connection_string(connection_string):
    cs = parse_connection_string(connection_string)
    assert cs.host_name == "test-hub.azure-devices.net"
    assert cs.device_id == "pi-01"
    assert cs.gateway == "test-hub.azure-devices.net"
    assert cs.resource_uri == "test-hub.azure-devices.net/devices/pi-01"
    assert KEY not in repr(cs)


def test_parse_keeps_trailing_padding_in_key():
    cs = parse_connection_string("HostName=h;DeviceId=d;SharedAccessKey=YWJjZA==")
    assert cs.shared_access_key == "YWJjZA=="


def test_parse_optional_keys():
    cs = parse_connection_string(
        f"HostName=h;DeviceId=d;ModuleId=m;GatewayHostName=edge.local;SharedAccessKey={KEY};x509=false"
    )
    assert cs.gateway == "edge.local"
    assert cs.resource_uri == "h/devices/d/modules/m"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "   ",
        "HostName=h;DeviceId=d",
        f"HostName=h;SharedAccessKey={KEY}",
        f"HostName=h;DeviceId=;SharedAccessKey={KEY}",
        f"HostName=h;DeviceId=d;SharedAccessKey={KEY};garbage",
        "HostName=h;DeviceId=d;SharedAccessKey=not*base64",
    ],
)
def test_parse_rejects_invalid(value):
    with pytest.raises(ConnectionStringError):
        parse_connection_string(value)


def test_error_message_does_not_leak_key():
    with pytest.raises(ConnectionStringError) as exc:
        parse_connection_string("HostName=h;DeviceId=d;SharedAccessKey=sup3r$ecret!")
    assert "sup3r" not in str(exc.value)


def test_sas_token_signature_verifies():
    token = generate_sas_token("h/devices/d", KEY, 1700000000)

    assert token.startswith("SharedAccessSignature sr=h%2Fdevices%2Fd&sig=")
    assert token.endswith("&se=1700000000")
    fields = dict(p.split("=", 1) for p in token[len("SharedAccessSignature "):].split("&"))
    expected = base64.b64encode(
        hmac.new(base64.b64decode(KEY), b"h%2Fdevices%2Fd\n1700000000", hashlib.sha256).digest()
    ).decode()
    assert unquote_plus(fields["sig"]) == expected


def test_sas_token_policy_name():
    assert generate_sas_token("h", KEY, 1, policy_name="device").endswith("&skn=device")


def test_connection_string_token_expiry_uses_ttl(connection_string):
    cs = parse_connection_string(connection_string)
    assert cs.sas_token(ttl_s=60, now=1000).endswith("&se=1060")
