"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

node Z2MGroup

A Zigbee2MQTT group. Behaves like a device node but is keyed by the
group id and has no battery or link quality of its own.
"""

# std libraries
from typing import Any, Dict

# external libraries
from udi_interface import LOGGER

# personal libraries
from nodes.Z2MDevice import Z2MDevice, OFF


class Z2MGroup(Z2MDevice):
    id = "z2mgroup"

    def __init__(self, polyglot, primary, address, name, group):
        super().__init__(polyglot, primary, address, name, group)
        # brightness is always sent to a group
        self.dimmable = True


    @staticmethod
    def _item_key(item: Dict[str, Any]) -> Any:
        return item.get("id")


    def updateInfo(self, values: Any, topic: str):
        """Track the group level only; members report their own radio values."""
        LOGGER.info(f"{self.lpfx} topic:{topic}, values:{values}")
        if not isinstance(values, dict):
            LOGGER.debug("Non-object payload, ignored")
            return
        self._update_level(values.get("state"), values.get("brightness"))
        LOGGER.debug("Exit")


    hint = '0x01020900'

    drivers = [
        {'driver': 'ST', 'value': OFF, 'uom': 51, 'name': "Status"},
        {'driver': 'GV0', 'value': 0, 'uom': 2, 'name': "Online"},
    ]
