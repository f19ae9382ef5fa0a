"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

node Z2MDevice

Class for a single Zigbee device behind Zigbee2MQTT.
Lights, plugs and switches are driven through state/brightness; every
device reports link quality, battery and availability when it has them.
"""

# std libraries
from typing import Any, Dict, Optional

# external libraries
from udi_interface import Node, LOGGER

# personal libraries
from z2m.bridge_state import BridgeStateTracker
from z2m.events import MESSAGE, AVAILABILITY, STOPPING

# constants
OFF = 0
FULL = 100
INC = 10
BRIGHTNESS_MAX = 254 # Zigbee level cluster


def level_to_brightness(level: int) -> int:
    return round(max(OFF, min(FULL, level)) * BRIGHTNESS_MAX / FULL)


def brightness_to_level(brightness: Any) -> Optional[int]:
    if isinstance(brightness, bool) or not isinstance(brightness, (int, float)):
        return None
    level = round(brightness * FULL / BRIGHTNESS_MAX)
    # a lit light never reports as off
    return max(1, min(FULL, level)) if brightness > 0 else OFF


class Z2MDevice(Node):
    """Node representing one Zigbee device.

    Values arrive as MESSAGE events from the ServerController; only events
    whose resolved item is this device are used. Commands are published to
    the device's /set topic.
    """
    id = "z2mdevice"

    def __init__(self, polyglot, primary, address, name, device):
        """Initializes the Z2MDevice node.

        Args:
            polyglot: Reference to the Polyglot interface.
            primary: The address of the parent node.
            address: The address of this node.
            name: The name of this node.
            device: The device record from bridge/devices.
        """
        super().__init__(polyglot, primary, address, name)
        self.controller = self.poly.getNode(self.primary)
        self.server = self.controller.server
        self.lpfx = f'{address}:{name}'
        self.key = self._item_key(device)
        self.dimmable = 'brightness' in BridgeStateTracker.writable_properties(device)
        self.level = OFF
        self.subs = [
            self.server.on(MESSAGE, self._on_message),
            self.server.on(AVAILABILITY, self._on_availability),
            self.server.on(STOPPING, self.unsubscribe),
        ]


    @staticmethod
    def _item_key(item: Dict[str, Any]) -> Any:
        return item.get("ieee_address")


    def _is_mine(self, item: Optional[Dict[str, Any]]) -> bool:
        return item is not None and self._item_key(item) == self.key


    def _on_message(self, event):
        if self._is_mine(event.item):
            self.updateInfo(event.values, event.topic)


    def _on_availability(self, event):
        if self._is_mine(event.item):
            LOGGER.info(f"{self.lpfx} {'online' if event.online else 'offline'}")
            self.setDriver("GV0", 1 if event.online else 0)


    def unsubscribe(self, _event=None):
        """Drop every server registration of this node."""
        LOGGER.debug(f"{self.lpfx} unsubscribe")
        for sub in self.subs:
            sub.cancel()
        self.subs = []


    def updateInfo(self, values: Any, topic: str):
        """Updates the node's status from the device's merged values.

        Args:
            values: Cached values of the device, a dict for JSON payloads.
            topic: The MQTT topic from which the message was received.
        """
        LOGGER.info(f"{self.lpfx} topic:{topic}, values:{values}")
        if not isinstance(values, dict):
            LOGGER.debug("Non-object payload, ignored")
            return

        if isinstance(values.get("linkquality"), (int, float)):
            self.setDriver("GV1", values["linkquality"])
        if isinstance(values.get("battery"), (int, float)):
            self.setDriver("BATLVL", values["battery"])
        self._update_level(values.get("state"), values.get("brightness"))
        LOGGER.debug("Exit")


    def _update_level(self, state: Any, brightness: Any):
        """Turn state/brightness into a level and report the change as a command."""
        new_level = brightness_to_level(brightness) if self.dimmable else None
        state = state.upper() if isinstance(state, str) else None

        target_level = None
        if state == "ON":
            if new_level is None or new_level == OFF:
                new_level = self.level if self.level > OFF else FULL
            target_level = new_level
        elif state == "OFF":
            target_level = OFF
        elif new_level is not None and self.level > OFF:
            target_level = new_level

        if target_level is None or target_level == self.level:
            LOGGER.debug("No state change needed.")
            return

        cmd = None
        if self.level == OFF and target_level > OFF:
            cmd = "DON"
        elif self.level > OFF and target_level == OFF:
            cmd = "DOF"
        elif target_level > self.level:
            cmd = "BRT"
        elif target_level < self.level:
            cmd = "DIM"
        if cmd:
            self.reportCmd(cmd)
        self._set_level(target_level, report=False)


    def _set_level(self, level: int, report: bool = True):
        """Sets the level, updates the driver, and publishes to the device.

        Args:
            level: The desired level (0-100)(OFF-FULL).
            report: If True, sends the command to the device.
        """
        level = max(OFF, min(FULL, level))
        self.level = level
        self.setDriver("ST", self.level)
        if not report:
            return
        if level == OFF:
            payload = {"state": "OFF"}
        elif self.dimmable:
            payload = {"state": "ON", "brightness": level_to_brightness(level)}
        else:
            payload = {"state": "ON"}
        result = self.server.send_command(self.key, payload)
        if 'error' in result:
            LOGGER.error(f"{self.lpfx} command not sent: {result['description']}")


    def on_cmd(self, command):
        """Handles the 'DON' command, with an optional level in 'value'."""
        LOGGER.info(f"{self.lpfx}, {command}")
        try:
            level = int(command.get("value", self.level))
        except (ValueError, TypeError):
            LOGGER.warning(f"Invalid 'value' in command: {command}. Using last known level.")
            level = self.level
        if level == OFF:
            level = FULL
        self._set_level(level)
        LOGGER.debug("Exit")


    def off_cmd(self, command):
        LOGGER.info(f"{self.lpfx}, {command}")
        self._set_level(OFF)
        LOGGER.debug("Exit")


    def brt_cmd(self, command):
        LOGGER.info(f"{self.lpfx}, {command}")
        self._set_level(min(self.level + INC, FULL))
        LOGGER.debug("Exit")


    def dim_cmd(self, command):
        LOGGER.info(f"{self.lpfx}, {command}")
        self._set_level(max(self.level - INC, OFF))
        LOGGER.debug("Exit")


    def query(self, command=None):
        """Handles the 'QUERY' command from ISY.

        Asks the gateway to re-read the device, then reports all drivers.
        """
        LOGGER.info(f"{self.lpfx}, {command}")
        result = self.server.request_state(self.key)
        if 'error' in result:
            LOGGER.warning(f"{self.lpfx} state request failed: {result['description']}")
        self.reportDrivers()
        LOGGER.debug("Exit")


    hint = '0x01020900'
    # home, controller, dimmer switch

    drivers = [
        {'driver': 'ST', 'value': OFF, 'uom': 51, 'name': "Status"},
        {'driver': 'GV0', 'value': 0, 'uom': 2, 'name': "Online"},
        {'driver': 'GV1', 'value': 0, 'uom': 56, 'name': "Link Quality"},
        {'driver': 'BATLVL', 'value': 0, 'uom': 51, 'name': "Battery"},
    ]

    commands = {
        "QUERY": query,
        "DON": on_cmd,
        "DOF": off_cmd,
        "BRT": brt_cmd,
        "DIM": dim_cmd,
    }
