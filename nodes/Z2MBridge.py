"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

node Z2MBridge

The Zigbee2MQTT gateway itself: bridge state, pairing window and log
level, plus the gateway-wide commands.
"""

# external libraries
from udi_interface import Node, LOGGER

# personal libraries
from z2m.bridge_state import UNKNOWN, WAITING, ONLINE, OFFLINE
from z2m.events import CONNECTIVITY, BRIDGE_STATE, BRIDGE_MESSAGE, STOPPING
from z2m.server import LOG_LEVELS, PERMIT_JOIN_DEFAULT

# constants
BRIDGE_STATE_INDEX = {UNKNOWN: 0, WAITING: 1, ONLINE: 2, OFFLINE: 3}


class Z2MBridge(Node):
    """Node for the Zigbee2MQTT bridge.

    ST follows the bridge state (0 unknown, 1 waiting, 2 online, 3 offline),
    GV0 the permit join flag, GV1 the gateway log level as an index into
    LOG_LEVELS and GV2 the number of devices in the topology.
    """
    id = "z2mbridge"

    def __init__(self, polyglot, primary, address, name):
        super().__init__(polyglot, primary, address, name)
        self.controller = self.poly.getNode(self.primary)
        self.lpfx = f'{address}:{name}'
        self.server = self.controller.server
        self.subs = [
            self.server.on(CONNECTIVITY, self._on_change),
            self.server.on(BRIDGE_STATE, self._on_change),
            self.server.on(BRIDGE_MESSAGE, self._on_change),
            self.server.on(STOPPING, self.unsubscribe),
        ]


    def _on_change(self, _event):
        self.updateInfo()


    def unsubscribe(self, _event=None):
        """Drop every server registration of this node."""
        LOGGER.debug(f"{self.lpfx} unsubscribe")
        for sub in self.subs:
            sub.cancel()
        self.subs = []


    def updateInfo(self):
        """Copy the gateway status onto the drivers."""
        state = self.server.server_state()
        z2m = state['zigbee2mqtt']
        self.setDriver("ST", BRIDGE_STATE_INDEX.get(z2m['bridge_state'], 0))
        self.setDriver("GV0", 1 if z2m['permit_join'] else 0)
        level = z2m['log_level']
        self.setDriver("GV1", LOG_LEVELS.index(level) if level in LOG_LEVELS else 0)
        self.setDriver("GV2", state['stats']['devices'])


    def permit_cmd(self, command):
        """Open the pairing window; the value, if any, is the time in seconds."""
        LOGGER.info(f"{self.lpfx}, {command}")
        window = command.get("value") if command else None
        result = self.server.set_permit_join(True, window or PERMIT_JOIN_DEFAULT)
        if 'error' in result:
            LOGGER.error(f"{self.lpfx} permit join failed: {result['description']}")
        LOGGER.debug("Exit")


    def permit_off_cmd(self, command):
        LOGGER.info(f"{self.lpfx}, {command}")
        result = self.server.set_permit_join(False)
        if 'error' in result:
            LOGGER.error(f"{self.lpfx} permit join failed: {result['description']}")
        LOGGER.debug("Exit")


    def restart_cmd(self, command):
        LOGGER.info(f"{self.lpfx}, {command}")
        self.server.restart()
        LOGGER.debug("Exit")


    def loglevel_cmd(self, command):
        """Set the gateway log level from an index into LOG_LEVELS."""
        LOGGER.info(f"{self.lpfx}, {command}")
        try:
            level = LOG_LEVELS[int(command.get("value"))]
        except (ValueError, TypeError, IndexError):
            LOGGER.warning(f"Invalid log level in command: {command}, using info")
            level = 'info'
        self.server.set_log_level(level)
        LOGGER.debug("Exit")


    def query(self, command=None):
        """Refresh from the gateway status and report all drivers."""
        LOGGER.info(f"{self.lpfx}, {command}")
        self.updateInfo()
        self.reportDrivers()
        LOGGER.debug("Exit")


    hint = '0x01120100'
    # home, controller, gateway

    drivers = [
        {'driver': 'ST', 'value': 0, 'uom': 25, 'name': "Bridge State"},
        {'driver': 'GV0', 'value': 0, 'uom': 2, 'name': "Permit Join"},
        {'driver': 'GV1', 'value': 0, 'uom': 25, 'name': "Log Level"},
        {'driver': 'GV2', 'value': 0, 'uom': 107, 'name': "Devices"},
    ]

    commands = {
        "QUERY": query,
        "PERMIT": permit_cmd,
        "PERMIT_OFF": permit_off_cmd,
        "RESTART": restart_cmd,
        "LOGLEVEL": loglevel_cmd,
    }
