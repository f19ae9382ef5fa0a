"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module lookup

Derived index from identifiers (IEEE address, friendly name, group id) to
topology records. Never authoritative: rebuilt per kind whenever the
tracker's topology version for that kind moves.
"""

# std libraries
from typing import Any, Callable, Dict, Optional

# personal libraries
from z2m.bridge_state import BridgeStateTracker
from z2m.formatting import format_payload, payload_to_homekit
from z2m.value_cache import ValueCache

DEVICES = 'devices'
GROUPS = 'groups'


def item_topic_suffix(item: Dict[str, Any]) -> str:
    """Suffix used on the broker for a device or group record."""
    name = item.get('friendly_name') or item.get('ieee_address')
    if name is None and item.get('id') is not None:
        name = str(item['id'])
    return '/' + str(name)


class LookupIndex:
    """Key to record index over a BridgeStateTracker.

    Args:
        tracker: Owner of the topology arrays and their versions.
        cache: Value cache consulted on every resolve.
        topic_for: Maps a suffix to a full topic (the controller's get_topic).
    """

    def __init__(self, tracker: BridgeStateTracker, cache: ValueCache,
                 topic_for: Callable[[str], str]):
        self.tracker = tracker
        self.cache = cache
        self.topic_for = topic_for
        self._index: Dict[str, Dict[str, Any]] = {}
        self._versions: Dict[str, int] = {}

    def rebuild(self, kind: str) -> None:
        """Rebuild the namespace of `kind`; the other kind is left alone."""
        prefix = kind + ':'
        for key in [k for k in self._index if k.startswith(prefix)]:
            del self._index[key]
        for item in self.tracker.items(kind) or []:
            if not isinstance(item, dict):
                continue
            if kind == DEVICES:
                ids = (item.get('ieee_address'), item.get('friendly_name'))
            else:
                ids = (item.get('id'), item.get('friendly_name'))
            for ident in ids:
                if ident is not None and ident != '':
                    self._index[f'{prefix}{ident}'] = item
        self._versions[kind] = self.tracker.version(kind)

    def is_stale(self, kind: str) -> bool:
        return self._versions.get(kind) != self.tracker.version(kind)

    def resolve(self, key: Any, kind: str) -> Optional[Dict[str, Any]]:
        """Find `key` among devices or groups.

        Returns:
            A shallow copy of the record with `current_values`, `format` and
            `homekit` computed from the value cache, or None.
        """
        if key is None or self.tracker.items(kind) is None:
            return None
        if self.is_stale(kind):
            self.rebuild(kind)
        found = self._index.get(f'{kind}:{key}')
        if found is None:
            return None
        return self.decorate(found)

    def decorate(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Copy `item` and attach the value-derived fields."""
        result = dict(item)
        result['current_values'] = None
        result['format'] = None
        result['homekit'] = None
        cached = self.cache.get(self.topic_for(item_topic_suffix(item)))
        if cached is not None:
            values = cached.value
            if isinstance(values, dict):
                values = dict(values)
            result['current_values'] = values
            result['format'] = format_payload(values, item)
            result['homekit'] = payload_to_homekit(values)
        return result

    def resolve_device_or_group(self, key: Any) -> Optional[Dict[str, Any]]:
        """Devices win over groups when a key matches both."""
        return self.resolve(key, DEVICES) or self.resolve(key, GROUPS)
