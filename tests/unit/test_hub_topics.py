import pytest

from hub_sensor_agent.hub_topics import (
    HubTopics,
    TopicSchemaError,
    TwinResponse,
    encode_property_bag,
    parse_twin_response,
)


@pytest.mark.unit
class TestHubTopics:
    """Test topic schema functionality"""

    @pytest.fixture
    def topics(self):
        return HubTopics("pi-01")

    def test_base(self, topics):
        assert topics.base == "devices/pi-01"

    def test_events_without_properties(self, topics):
        assert topics.events() == "devices/pi-01/messages/events/"

    def test_events_with_content_properties(self, topics):
        topic = topics.events({"$.ct": "application/json", "$.ce": "utf-8"})
        assert topic == "devices/pi-01/messages/events/$.ct=application%2Fjson&$.ce=utf-8"

    def test_module_base(self):
        assert HubTopics("pi-01", "sensor").base == "devices/pi-01/modules/sensor"

    def test_twin_topics(self, topics):
        assert topics.twin_responses() == "$iothub/twin/res/#"
        assert topics.twin_get("3") == "$iothub/twin/GET/?$rid=3"
        assert topics.twin_patch_reported("4") == "$iothub/twin/PATCH/properties/reported/?$rid=4"

    @pytest.mark.parametrize("bad", ["", "has space", "slash/inside"])
    def test_invalid_device_id(self, bad):
        with pytest.raises(TopicSchemaError):
            HubTopics(bad)


def test_property_bag_encodes_values():
    assert encode_property_bag({"app": "a b&c"}) == "app=a%20b%26c"


def test_parse_twin_response_with_version():
    assert parse_twin_response("$iothub/twin/res/204/?$rid=7&$version=12") == TwinResponse(204, "7", 12)


def test_parse_twin_response_without_version():
    r = parse_twin_response("$iothub/twin/res/200/?$rid=1")
    assert r == TwinResponse(200, "1", None)
    assert r.ok


def test_parse_twin_response_error_status():
    assert not parse_twin_response("$iothub/twin/res/429/?$rid=2").ok


@pytest.mark.parametrize(
    "topic",
    ["devices/pi-01/messages/devicebound/x", "$iothub/twin/res/abc/?$rid=1", "$iothub/twin/res/200/?foo=1"],
)
def test_parse_twin_response_ignores_other_topics(topic):
    assert parse_twin_response(topic) is None
