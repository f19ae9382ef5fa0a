"""
Test suite for Z2MBridge node.

Tests cover:
- Driver updates from bridge state, info and connectivity
- Permit join, restart and log level commands
- Unregistering on server stop
"""

import pytest
from unittest.mock import Mock
from nodes.Z2MBridge import Z2MBridge, BRIDGE_STATE_INDEX
from z2m.events import BRIDGE_STATE, BRIDGE_MESSAGE, CONNECTIVITY, STOPPING
from z2m.server import ServerController


@pytest.fixture
def server():
    srv = ServerController({"host": "broker.local"}, storage={})
    srv.supervisor.client = Mock()
    srv.supervisor.publish = Mock(return_value=True)
    srv.supervisor.connected = True
    return srv


@pytest.fixture
def bridge(server):
    poly = Mock()
    poly.getNode = Mock(return_value=Mock(server=server))
    poly.db_getNodeDrivers = Mock(return_value=[])
    node = Z2MBridge(poly, "z2mctrl", "z2mbridge", "Zigbee2MQTT Bridge")
    node.setDriver = Mock()
    node.reportDrivers = Mock()
    return node


class TestZ2MBridgeInitialization:
    """Tests for Z2MBridge initialization."""

    def test_initialization(self, bridge, server):
        assert bridge.id == "z2mbridge"
        assert bridge.server is server
        for name in (CONNECTIVITY, BRIDGE_STATE, BRIDGE_MESSAGE, STOPPING):
            assert server.events.listener_count(name) == 1

    def test_state_index(self):
        assert BRIDGE_STATE_INDEX == {"unknown": 0, "waiting": 1, "online": 2, "offline": 3}


class TestZ2MBridgeUpdates:
    """Tests for driver updates."""

    def test_bridge_online(self, bridge, server):
        server.handle_message("zigbee2mqtt/bridge/state", b'{"state":"online"}')
        bridge.setDriver.assert_any_call("ST", 2)

    def test_bridge_offline(self, bridge, server):
        server.handle_message("zigbee2mqtt/bridge/state", b'"offline"')
        bridge.setDriver.assert_any_call("ST", 3)

    def test_info(self, bridge, server):
        server.handle_message("zigbee2mqtt/bridge/info",
                              b'{"version": "1.35.0", "permit_join": true, "log_level": "debug"}')
        bridge.setDriver.assert_any_call("GV0", 1)
        bridge.setDriver.assert_any_call("GV1", 1)

    def test_device_count(self, bridge, server):
        server.handle_message("zigbee2mqtt/bridge/devices",
                              b'[{"ieee_address": "0x1", "friendly_name": "a"}]')
        bridge.setDriver.assert_any_call("GV2", 1)

    def test_stopping_unregisters(self, bridge, server):
        server.close()
        assert bridge.subs == []


class TestZ2MBridgeCommands:
    """Tests for the ISY command handlers."""

    def test_permit_default(self, bridge, server):
        bridge.permit_cmd({"cmd": "PERMIT"})
        server.supervisor.publish.assert_called_once_with(
            "zigbee2mqtt/bridge/request/permit_join", {"value": True, "time": 180}, qos=0)

    def test_permit_with_time(self, bridge, server):
        bridge.permit_cmd({"cmd": "PERMIT", "value": "60"})
        assert server.supervisor.publish.call_args[0][1] == {"value": True, "time": 60}

    def test_permit_off(self, bridge, server):
        bridge.permit_off_cmd({"cmd": "PERMIT_OFF"})
        assert server.supervisor.publish.call_args[0][1] == {"value": False}

    def test_permit_not_connected(self, bridge, server):
        server.supervisor.connected = False
        bridge.permit_cmd({"cmd": "PERMIT"})
        server.supervisor.publish.assert_not_called()

    def test_restart(self, bridge, server):
        bridge.restart_cmd({"cmd": "RESTART"})
        server.supervisor.publish.assert_called_once_with("zigbee2mqtt/bridge/request/restart", "", qos=0)

    @pytest.mark.parametrize("value, level", [("1", "debug"), ("3", "error"), ("9", "info"), (None, "info")])
    def test_loglevel(self, bridge, server, value, level):
        bridge.loglevel_cmd({"cmd": "LOGLEVEL", "value": value})
        payload = server.supervisor.publish.call_args[0][1]
        assert payload == {"options": {"advanced": {"log_level": level}}}

    def test_query(self, bridge):
        bridge.query()
        bridge.setDriver.assert_any_call("ST", 0)
        bridge.reportDrivers.assert_called_once()
