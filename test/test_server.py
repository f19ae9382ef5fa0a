"""
Comprehensive test suite for ServerController.

Tests cover:
- Message routing (bridge, state, availability, command echoes, foreign)
- Topology persistence and restore
- Device queries and the topology wait
- Command validation and published payloads
- Teardown ordering
- End-to-end device scenarios
"""

import json
import threading
import pytest
from unittest.mock import Mock, patch
from z2m.events import CONNECTIVITY, BRIDGE_STATE, BRIDGE_MESSAGE, MESSAGE, AVAILABILITY, STOPPING
from z2m.server import (
    ServerController,
    DEVICES_KEY,
    GROUPS_KEY,
    PERMIT_JOIN_DEFAULT,
    COLOR_UNKNOWN,
    COLOR_OFFLINE,
    COLOR_ONLINE,
)

LAMP = {
    "ieee_address": "0x00124b0018e2a1f3",
    "friendly_name": "lamp1",
    "type": "Router",
    "definition": {
        "exposes": [
            {"type": "numeric", "name": "brightness", "property": "brightness",
             "access": 7, "value_min": 0, "value_max": 255},
        ]
    },
}
COORDINATOR = {"ieee_address": "0x00124b0000000001", "friendly_name": "Coordinator", "type": "Coordinator"}
GROUP = {"id": 3, "friendly_name": "living", "members": []}


def dumps(value):
    return json.dumps(value).encode()


@pytest.fixture
def server():
    """A ServerController with a mocked publish channel and a live transport."""
    srv = ServerController({"host": "broker.local", "base_topic": "zigbee2mqtt"}, storage={})
    srv.supervisor.client = Mock()
    srv.supervisor.publish = Mock(return_value=True)
    srv.supervisor.connected = True
    return srv


@pytest.fixture
def topology(server):
    server.handle_message("zigbee2mqtt/bridge/devices", dumps([COORDINATOR, LAMP]))
    server.handle_message("zigbee2mqtt/bridge/groups", dumps([GROUP]))
    server.supervisor.publish.reset_mock()
    return server


class TestServerInitialization:
    """Tests for construction and topics."""

    def test_defaults(self):
        srv = ServerController({"host": "h"})
        assert srv.get_base_topic() == "zigbee2mqtt"
        assert srv.qos == 0
        assert srv.devices is None
        assert srv.bridge_state == "unknown"
        assert srv.connected is False

    def test_base_topic_and_qos(self):
        srv = ServerController({"host": "h", "base_topic": "home/z2m/", "qos": "1"})
        assert srv.get_topic("bridge/state") == "home/z2m/bridge/state"
        assert srv.qos == 1

    def test_invalid_qos(self):
        assert ServerController({"qos": 5}).qos == 0

    def test_restore_from_storage(self):
        srv = ServerController({"host": "h"}, storage={DEVICES_KEY: [LAMP], GROUPS_KEY: [GROUP]})
        assert srv.get_device_by_key("lamp1")["ieee_address"] == LAMP["ieee_address"]
        assert srv.get_group_by_key(3)["friendly_name"] == "living"

    def test_bad_storage(self):
        storage = Mock()
        storage.get.side_effect = KeyError("broken")
        assert ServerController({"host": "h"}, storage=storage).devices is None


class TestStart:
    """Tests for start() with a mocked paho client."""

    @pytest.fixture
    def client(self):
        with patch("z2m.supervisor.Client") as client_cls:
            client = Mock()
            client.subscribe = Mock(return_value=(0, 1))
            client_cls.return_value = client
            yield client

    def test_start_subscribes_base(self, client):
        srv = ServerController({"host": "broker.local"}, name="z2mctrl")
        assert srv.start() is True
        assert srv.supervisor.subscriptions == {"zigbee2mqtt/#": 0}

    def test_start_without_host(self, client):
        srv = ServerController({})
        assert srv.start() is False

    def test_connectivity_events(self, client):
        srv = ServerController({"host": "broker.local"})
        seen = []
        srv.on(CONNECTIVITY, seen.append)
        srv.start()

        srv.supervisor._on_connect(client, None, {}, 0, None)
        assert seen[-1].connected is True
        assert srv.bridge_state == "waiting"

        srv.supervisor._on_disconnect(client, None, {}, 7, None)
        assert seen[-1].connected is False
        assert srv.bridge_state == "offline"

    def test_reconnect_clears_cache(self, client):
        srv = ServerController({"host": "broker.local"})
        srv.start()
        srv.supervisor._on_connect(client, None, {}, 0, None)
        srv.handle_message("zigbee2mqtt/lamp1", b'{"state": "ON"}')
        assert len(srv.cache) == 1

        srv.supervisor._on_pre_connect(client, None)
        assert len(srv.cache) == 0


class TestMessageRouting:
    """Tests for handle_message()."""

    def test_devices_persisted(self, server):
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        assert server.storage[DEVICES_KEY] == [LAMP]

    def test_groups_persisted(self, server):
        server.handle_message("zigbee2mqtt/bridge/groups", dumps([GROUP]))
        assert server.storage[GROUPS_KEY] == [GROUP]

    def test_devices_warm_up(self, server):
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([COORDINATOR, LAMP]))

        server.supervisor.publish.assert_called_once_with(
            "zigbee2mqtt/lamp1/get", {"brightness": ""}, qos=0)

    def test_warm_up_once_per_device(self, server):
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        assert server.supervisor.publish.call_count == 1

    def test_warm_up_not_repeated_after_reconnect(self, server):
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        server._on_transport_reconnecting(None)
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        assert server.supervisor.publish.call_count == 1

    def test_no_warm_up_on_groups(self, server):
        server.handle_message("zigbee2mqtt/bridge/groups", dumps([GROUP]))
        server.supervisor.publish.assert_not_called()

    def test_bridge_state_event_every_time(self, server):
        events = []
        server.on(BRIDGE_STATE, events.append)
        server.handle_message("zigbee2mqtt/bridge/state", b'{"state":"online"}')
        server.handle_message("zigbee2mqtt/bridge/state", b'{"state":"online"}')

        assert [e.online for e in events] == [True, True]
        assert [e.changed for e in events] == [True, False]
        assert server.bridge_state == "online"

    def test_bridge_message_event(self, server):
        events = []
        server.on(BRIDGE_MESSAGE, events.append)
        server.handle_message("zigbee2mqtt/bridge/info", b'{"version": "1.35.0"}')

        assert events[0].topic == "zigbee2mqtt/bridge/info"
        assert server.bridge_info == {"version": "1.35.0"}

    def test_state_message(self, topology):
        events = []
        topology.on(MESSAGE, events.append)
        topology.handle_message("zigbee2mqtt/lamp1", b'{"state": "ON"}')
        topology.handle_message("zigbee2mqtt/lamp1", b'{"brightness": 20}')

        assert events[-1].payload == {"brightness": 20}
        assert events[-1].values == {"state": "ON", "brightness": 20}
        assert events[-1].item["ieee_address"] == LAMP["ieee_address"]

    def test_group_state_message(self, topology):
        events = []
        topology.on(MESSAGE, events.append)
        topology.handle_message("zigbee2mqtt/living", b'{"state": "OFF"}')
        assert events[0].item["id"] == 3

    def test_unknown_device_message(self, topology):
        events = []
        topology.on(MESSAGE, events.append)
        topology.handle_message("zigbee2mqtt/stranger", b"42")

        assert events[0].item is None
        assert events[0].values == 42

    def test_command_echo_ignored(self, topology):
        listener = Mock()
        topology.on(MESSAGE, listener)
        topology.handle_message("zigbee2mqtt/lamp1/set", b'{"state": "ON"}')

        listener.assert_not_called()
        assert len(topology.cache) == 0

    def test_foreign_topic_ignored(self, server):
        listener = Mock()
        server.on(MESSAGE, listener)
        server.handle_message("tasmota/stat/POWER", b"ON")
        listener.assert_not_called()

    def test_listener_error_contained(self, topology):
        topology.on(MESSAGE, Mock(side_effect=RuntimeError("node gone")))
        topology.handle_message("zigbee2mqtt/lamp1", b'{"state": "ON"}')
        assert topology.cache.get("zigbee2mqtt/lamp1").value == {"state": "ON"}


class TestQueries:
    """Tests for get_devices and lookups."""

    def test_get_devices_cached(self, topology):
        topology.handle_message("zigbee2mqtt/lamp1", b'{"brightness": 5}')
        devices, groups = topology.get_devices(with_groups=True)

        assert [d["friendly_name"] for d in devices] == ["Coordinator", "lamp1"]
        assert devices[1]["current_values"] == {"brightness": 5}
        assert groups == [GROUP]
        topology.supervisor.publish.assert_not_called()

    def test_get_devices_timeout(self, server):
        assert server.get_devices(with_groups=True, timeout=0.01) == ([], [])

        topics = [c[0][0] for c in server.supervisor.publish.call_args_list]
        assert topics == ["zigbee2mqtt/bridge/request/devices/get",
                          "zigbee2mqtt/bridge/request/groups/get"]
        assert server.events.listener_count(BRIDGE_MESSAGE) == 0

    def test_get_devices_waits_for_reply(self, server):
        def reply(topic, payload, qos=0):
            if topic.endswith("devices/get"):
                threading.Timer(0.05, server.handle_message,
                                ("zigbee2mqtt/bridge/devices", dumps([LAMP]))).start()
            return True
        server.supervisor.publish = Mock(side_effect=reply)

        devices, groups = server.get_devices(timeout=2)

        assert devices[0]["friendly_name"] == "lamp1"
        assert groups == []
        assert server.events.listener_count(BRIDGE_MESSAGE) == 0

    def test_device_or_group(self, topology):
        assert topology.get_device_or_group_by_key("living")["id"] == 3
        assert topology.get_device_or_group_by_key(LAMP["ieee_address"])["friendly_name"] == "lamp1"
        assert topology.get_device_or_group_by_key("nobody") is None

    def test_server_state(self, topology):
        topology.handle_message("zigbee2mqtt/bridge/state", b"online")
        state = topology.server_state()

        assert state["online"] is True
        assert state["state"] == "online"
        assert state["stats"] == {"devices": 2, "groups": 1}

    def test_server_state_mqtt_offline(self):
        state = ServerController({"host": "h"}).server_state()
        assert state["state"] == "mqtt_offline"
        assert state["errorComponent"] == "mqtt"

    def test_server_state_bridge_offline(self, server):
        server.supervisor.client = Mock()
        server.handle_message("zigbee2mqtt/bridge/state", b"offline")
        assert server.server_state()["state"] == "z2m_offline"


class TestCommands:
    """Tests for the command surface."""

    def test_rename_nonexistent_device(self, topology):
        result = topology.rename_device("nonexistent-id", "x")

        assert result["error"] is True
        assert topology.supervisor.publish.call_count == 0

    def test_rename_empty_name(self, topology):
        assert topology.rename_device("lamp1", "  ")["error"] is True
        topology.supervisor.publish.assert_not_called()

    def test_rename_device(self, topology):
        assert topology.rename_device(LAMP["ieee_address"], "lamp2")["success"] is True
        topology.supervisor.publish.assert_called_once_with(
            "zigbee2mqtt/bridge/request/device/rename", {"from": "lamp1", "to": "lamp2"}, qos=0)

    def test_remove_device(self, topology):
        topology.remove_device("lamp1")
        topology.supervisor.publish.assert_called_once_with(
            "zigbee2mqtt/bridge/device/remove", {"id": "lamp1", "force": True}, qos=0)

    def test_group_commands(self, topology):
        assert topology.add_group("")["error"] is True
        assert topology.add_device_to_group("lamp1", 99)["error"] is True
        assert topology.remove_device_from_group("gone", 3)["success"] is True
        assert topology.remove_group(3)["success"] is True
        assert topology.supervisor.publish.call_count == 2

    def test_permit_join_default_time(self, topology):
        result = topology.set_permit_join(True)

        topology.supervisor.publish.assert_called_once_with(
            "zigbee2mqtt/bridge/request/permit_join", {"value": True, "time": PERMIT_JOIN_DEFAULT}, qos=0)
        assert result["time"] == 180

    @pytest.mark.parametrize("time", [0, -5, "abc", True])
    def test_permit_join_invalid_time(self, topology, time):
        topology.set_permit_join("true", time)
        payload = topology.supervisor.publish.call_args[0][1]
        assert payload == {"value": True, "time": 180}

    def test_permit_join_off(self, topology):
        topology.set_permit_join(False)
        assert topology.supervisor.publish.call_args[0][1] == {"value": False}

    def test_permit_join_not_connected(self, topology):
        topology.supervisor.connected = False
        assert topology.set_permit_join(True)["error"] is True
        topology.supervisor.publish.assert_not_called()

    def test_log_level_fallback(self, topology):
        topology.set_log_level("verbose")
        payload = topology.supervisor.publish.call_args[0][1]
        assert payload == {"options": {"advanced": {"log_level": "info"}}}

    def test_send_command(self, topology):
        topology.send_command(LAMP["ieee_address"], {"state": "ON"})
        topology.supervisor.publish.assert_called_once_with("zigbee2mqtt/lamp1/set", {"state": "ON"}, qos=0)

    def test_request_state(self, topology):
        topology.request_state(3)
        topology.supervisor.publish.assert_called_once_with("zigbee2mqtt/living/get", {"state": ""}, qos=0)

    def test_publish_refused(self, topology):
        topology.supervisor.publish.return_value = False
        assert topology.restart() == {"error": True, "description": "MQTT not connected"}


class TestTeardown:
    """Tests for close()."""

    def test_stopping_then_silence(self, topology):
        order = []
        topology.on(STOPPING, lambda e: order.append("stopping"))
        listener = Mock()
        topology.on(MESSAGE, listener)

        topology.close()
        topology.handle_message("zigbee2mqtt/lamp1", b'{"state": "ON"}')
        topology.supervisor._on_message(None, None, Mock(topic="zigbee2mqtt/lamp1", payload=b"{}"))

        assert order == ["stopping"]
        listener.assert_not_called()
        assert topology.events.listener_count() == 0
        assert len(topology.cache) == 0

    def test_close_idempotent(self, server):
        stopping = Mock()
        server.on(STOPPING, stopping)
        server.close()
        server.close()
        stopping.assert_called_once()


class TestScenarios:
    """End-to-end device scenarios."""

    def test_state_resolves_to_values(self, server):
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        server.handle_message("zigbee2mqtt/lamp1", b'{"brightness":100}')

        assert server.get_device_by_key("lamp1")["current_values"] == {"brightness": 100}

    def test_availability_color(self, server):
        server.handle_message("zigbee2mqtt/bridge/devices", dumps([LAMP]))
        topic = server.get_topic("lamp1")
        assert server.get_availability_color(topic) == COLOR_UNKNOWN

        events = []
        server.on(AVAILABILITY, events.append)
        server.handle_message("zigbee2mqtt/lamp1/availability", b'"offline"')
        assert server.get_availability_color(topic) == COLOR_OFFLINE
        assert events[-1].online is False
        assert events[-1].item["friendly_name"] == "lamp1"

        server.handle_message("zigbee2mqtt/lamp1/availability", b'{"state":"online"}')
        assert server.get_availability_color(topic) == COLOR_ONLINE

    def test_permit_join_payload(self, server):
        server.set_permit_join(True)
        topic, payload = server.supervisor.publish.call_args[0]
        assert topic == "zigbee2mqtt/bridge/request/permit_join"
        assert payload == {"value": True, "time": 180}
