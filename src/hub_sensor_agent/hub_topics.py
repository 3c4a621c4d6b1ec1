"""
MQTT topic schema for the IoT hub device endpoint.

Device-to-cloud: devices/<device_id>/messages/events/<property bag>.
Module-to-cloud: devices/<device_id>/modules/<module_id>/messages/events/<property bag>.
Twin requests:   $iothub/twin/GET/?$rid=<rid>, $iothub/twin/PATCH/properties/reported/?$rid=<rid>.
Twin responses:  $iothub/twin/res/<status>/?$rid=<rid>[&$version=<version>].
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, quote

_ID_RE = re.compile(r"^[A-Za-z0-9\-:.+%_#*?!(),=@;$']+$")
_TWIN_RES_RE = re.compile(r"^\$iothub/twin/res/(\d+)/\?(.*)$")

TWIN_RESPONSE_FILTER = "$iothub/twin/res/#"


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def _validate_id(kind: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicSchemaError(f"{kind} must be a non-empty string")
    if not _ID_RE.fullmatch(value):
        raise TopicSchemaError(f"{kind} '{value}' contains characters not allowed in a topic")
    return value


def encode_property_bag(properties: dict[str, str]) -> str:
    """URL-encode message system/application properties for the events topic."""
    return "&".join(f"{quote(k, safe='$.')}={quote(v, safe='')}" for k, v in properties.items())


@dataclass(frozen=True, slots=True)
class TwinResponse:
    status: int
    rid: str
    version: Optional[int] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def parse_twin_response(topic: str) -> Optional[TwinResponse]:
    """Parse a twin response topic; returns None for any other topic."""
    m = _TWIN_RES_RE.match(topic)
    if not m:
        return None
    query = parse_qs(m.group(2))
    rids = query.get("$rid")
    if not rids:
        return None
    version: Optional[int] = None
    raw_version = query.get("$version")
    if raw_version:
        try:
            version = int(raw_version[0])
        except ValueError:
            version = None
    return TwinResponse(status=int(m.group(1)), rid=rids[0], version=version)


@dataclass(frozen=True, slots=True)
class HubTopics:
    """
    Topic schema for a single device (or module) identity.
    """

    device_id: str
    module_id: Optional[str] = None

    def __post_init__(self) -> None:
        _validate_id("device_id", self.device_id)
        if self.module_id is not None:
            _validate_id("module_id", self.module_id)

    @property
    def base(self) -> str:
        if self.module_id:
            return f"devices/{self.device_id}/modules/{self.module_id}"
        return f"devices/{self.device_id}"

    # -------------------------
    # Device-to-cloud
    # -------------------------
    def events(self, properties: Optional[dict[str, str]] = None) -> str:
        topic = f"{self.base}/messages/events/"
        if properties:
            topic += encode_property_bag(properties)
        return topic

    # -------------------------
    # Twin
    # -------------------------
    def twin_responses(self) -> str:
        return TWIN_RESPONSE_FILTER

    def twin_get(self, rid: str) -> str:
        return f"$iothub/twin/GET/?$rid={rid}"

    def twin_patch_reported(self, rid: str) -> str:
        return f"$iothub/twin/PATCH/properties/reported/?$rid={rid}"
