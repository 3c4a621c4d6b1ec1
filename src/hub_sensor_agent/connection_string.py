"""
Device connection string parsing and SAS token generation.

A connection string looks like:

    HostName=<hub>.azure-devices.net;DeviceId=<device>;SharedAccessKey=<base64 key>

The shared access key never leaves this module except as an HMAC signature.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote_plus

_REQUIRED_KEYS = ("HostName", "DeviceId", "SharedAccessKey")

DEFAULT_TOKEN_TTL_S = 3600


class ConnectionStringError(ValueError):
    """Raised when a connection string is malformed or incomplete."""


@dataclass(frozen=True, slots=True)
class ConnectionString:
    host_name: str
    device_id: str
    shared_access_key: str = field(repr=False)
    shared_access_key_name: Optional[str] = None
    module_id: Optional[str] = None
    gateway_host_name: Optional[str] = None

    @property
    def gateway(self) -> str:
        """Host the MQTT connection is made to."""
        return self.gateway_host_name or self.host_name

    @property
    def resource_uri(self) -> str:
        uri = f"{self.host_name}/devices/{self.device_id}"
        if self.module_id:
            uri += f"/modules/{self.module_id}"
        return uri

    def sas_token(self, *, ttl_s: int = DEFAULT_TOKEN_TTL_S, now: Optional[float] = None) -> str:
        expiry = int((time.time() if now is None else now) + ttl_s)
        return generate_sas_token(
            self.resource_uri,
            self.shared_access_key,
            expiry,
            policy_name=self.shared_access_key_name,
        )


def parse_connection_string(value: str) -> ConnectionString:
    """
    Parse a `Key=Value;Key=Value` connection string.

    Raises ConnectionStringError on empty input, malformed pairs or missing
    required keys. Unrecognised keys are ignored. Error messages never contain
    the key value.
    """
    if not isinstance(value, str) or not value.strip():
        raise ConnectionStringError("connection string must be a non-empty string")

    parts: dict[str, str] = {}
    for segment in value.strip().split(";"):
        if not segment:
            continue
        # base64 keys may end in '=' so split on the first one only
        key, sep, val = segment.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConnectionStringError("malformed connection string segment (expected Key=Value)")
        parts[key] = val.strip()

    missing = [k for k in _REQUIRED_KEYS if not parts.get(k)]
    if missing:
        raise ConnectionStringError(f"connection string missing: {', '.join(missing)}")

    try:
        base64.b64decode(parts["SharedAccessKey"], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConnectionStringError("SharedAccessKey is not valid base64") from exc

    return ConnectionString(
        host_name=parts["HostName"],
        device_id=parts["DeviceId"],
        shared_access_key=parts["SharedAccessKey"],
        shared_access_key_name=parts.get("SharedAccessKeyName") or None,
        module_id=parts.get("ModuleId") or None,
        gateway_host_name=parts.get("GatewayHostName") or None,
    )


def generate_sas_token(
    resource_uri: str,
    key: str,
    expiry: int,
    *,
    policy_name: Optional[str] = None,
) -> str:
    """Build a SharedAccessSignature for resource_uri valid until epoch second `expiry`."""
    sr = quote_plus(resource_uri)
    to_sign = f"{sr}\n{expiry}".encode("utf-8")
    digest = hmac.new(base64.b64decode(key), to_sign, hashlib.sha256).digest()
    sig = quote_plus(base64.b64encode(digest).decode("ascii"))

    token = f"SharedAccessSignature sr={sr}&sig={sig}&se={expiry}"
    if policy_name:
        token += f"&skn={policy_name}"
    return token
