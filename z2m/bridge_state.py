"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module bridge_state

Tracks the gateway itself: its online state and the device/group topology
it publishes on the reserved bridge topics. Runtime values live in the
value cache, never here.
"""

# std libraries
from typing import Any, Dict, List, Optional, Tuple

# external libraries
from udi_interface import LOGGER

# personal libraries
from z2m.payload import parse_json, parse_online

# bridge states
UNKNOWN = 'unknown'
WAITING = 'waiting'
ONLINE = 'online'
OFFLINE = 'offline'

# expose access flags
ACCESS_STATE = 0b001
ACCESS_SET = 0b010
ACCESS_GET = 0b100


class BridgeStateTracker:
    """State machine over bridge/state plus the topology snapshots.

    The version counters are bumped on every accepted snapshot, including
    one of the same length, so indexes built on top can tell a rename from
    an unchanged list.
    """

    def __init__(self, devices: Optional[List[Dict[str, Any]]] = None,
                 groups: Optional[List[Dict[str, Any]]] = None):
        self.state = UNKNOWN
        self.info: Optional[Dict[str, Any]] = None
        self.devices = devices if isinstance(devices, list) else None
        self.groups = groups if isinstance(groups, list) else None
        self.devices_version = 1 if self.devices is not None else 0
        self.groups_version = 1 if self.groups is not None else 0

    @property
    def online(self) -> bool:
        return self.state == ONLINE

    def version(self, kind: str) -> int:
        return self.devices_version if kind == 'devices' else self.groups_version

    def items(self, kind: str) -> Optional[List[Dict[str, Any]]]:
        return self.devices if kind == 'devices' else self.groups

    def set_transport(self, connected: bool) -> str:
        """Layer transport connectivity under the bridge state.

        A live transport with no state message yet is `waiting`; a dead one
        is `offline` whatever the gateway last said.
        """
        if not connected:
            self.state = OFFLINE
        elif self.state != ONLINE:
            self.state = WAITING
        return self.state

    def update_devices(self, raw: Any) -> bool:
        devices = parse_json(raw)
        if not isinstance(devices, list):
            LOGGER.warning("Ignoring bridge/devices payload that is not a list")
            return False
        self.devices = devices
        self.devices_version += 1
        LOGGER.debug(f"Topology: {len(devices)} devices (v{self.devices_version})")
        return True

    def update_groups(self, raw: Any) -> bool:
        groups = parse_json(raw)
        if not isinstance(groups, list):
            LOGGER.warning("Ignoring bridge/groups payload that is not a list")
            return False
        self.groups = groups
        self.groups_version += 1
        LOGGER.debug(f"Topology: {len(groups)} groups (v{self.groups_version})")
        return True

    def update_info(self, raw: Any) -> Optional[Dict[str, Any]]:
        info = parse_json(raw)
        self.info = info if isinstance(info, dict) else None
        return self.info

    def update_state(self, raw: Any) -> Tuple[bool, bool]:
        """Apply a bridge/state payload.

        Returns:
            Tuple[bool, bool]: (online, changed from the previous state).
        """
        online = parse_online(raw)
        new_state = ONLINE if online else OFFLINE
        changed = new_state != self.state
        self.state = new_state
        if not online:
            LOGGER.warning("Bridge offline")
        else:
            LOGGER.debug("Bridge online")
        return online, changed

    def summary(self) -> Dict[str, Any]:
        info = self.info or {}
        coordinator = info.get('coordinator') or {}
        meta = coordinator.get('meta') or {}
        return {
            'version': info.get('version'),
            'permit_join': bool(info.get('permit_join', False)),
            'log_level': info.get('log_level', 'info'),
            'coordinator_type': coordinator.get('type'),
            'coordinator_revision': meta.get('revision'),
        }

    @staticmethod
    def readable_properties(device: Dict[str, Any]) -> List[str]:
        """Property names the gateway can be asked to read for `device`."""
        return BridgeStateTracker.properties(device, ACCESS_GET)

    @staticmethod
    def writable_properties(device: Dict[str, Any]) -> List[str]:
        """Property names that can be set on `device` through /set."""
        return BridgeStateTracker.properties(device, ACCESS_SET)

    @staticmethod
    def properties(device: Dict[str, Any], access: int) -> List[str]:
        """Property names of `device` whose expose has any of the `access` bits.

        Walks composite exposes (lights, climate) through their features.
        """
        definition = device.get('definition') or {}
        found: List[str] = []

        def walk(exposes):
            for exp in exposes or []:
                if not isinstance(exp, dict):
                    continue
                if 'features' in exp:
                    walk(exp['features'])
                    continue
                name = exp.get('property') or exp.get('name')
                if name and (exp.get('access', 0) & access) and name not in found:
                    found.append(name)

        walk(definition.get('exposes'))
        return found
