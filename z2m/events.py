"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module events

Publish/subscribe hub used to fan one inbound broker message out to any
number of nodes. Delivery is synchronous and in registration order on the
thread that emits; listeners are expected to be small and non-blocking.
"""

# std libraries
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

# external libraries
from udi_interface import LOGGER

# event names
CONNECTIVITY = 'connectivity'
BRIDGE_STATE = 'bridge_state'
BRIDGE_MESSAGE = 'bridge_message'
MESSAGE = 'message'
AVAILABILITY = 'availability'
STOPPING = 'stopping'

# transport lifecycle event names, emitted by the supervisor
CONNECTED = 'connected'
DISCONNECTED = 'disconnected'
RECONNECTING = 'reconnecting'
OFFLINE = 'offline'
CLOSED = 'closed'
ERROR = 'error'

Listener = Callable[[Any], None]


@dataclass
class ConnectivityEvent:
    connected: bool
    reason: Optional[str] = None


@dataclass
class BridgeStateEvent:
    topic: str
    online: bool
    changed: bool


@dataclass
class BridgeMessageEvent:
    topic: str
    payload: Any


@dataclass
class MessageEvent:
    """State update for one device or group.

    `payload` is what arrived, `values` is the merged cache entry and
    `item` is the resolved device/group record (None if unknown).
    """
    topic: str
    payload: Any
    values: Any
    item: Optional[Dict[str, Any]]


@dataclass
class AvailabilityEvent:
    topic: str
    online: bool
    item: Optional[Dict[str, Any]]


@dataclass
class StoppingEvent:
    reason: str = 'server stopping'


class Subscription:
    """Handle returned by EventHub.on(); cancel() removes that registration."""

    def __init__(self, hub: 'EventHub', name: str, listener: Listener):
        self.hub = hub
        self.name = name
        self.listener = listener
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.hub._remove(self)


class EventHub:
    """Observer list per event name, no listener cap.

    Registration changes are serialised by a lock; emit works on a
    snapshot taken under it and calls listeners without holding it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Subscription]] = {}

    def on(self, name: str, listener: Listener) -> Subscription:
        """Register `listener` for `name` and return its Subscription."""
        sub = Subscription(self, name, listener)
        with self._lock:
            self._subs.setdefault(name, []).append(sub)
        return sub

    def off(self, name: str, listener: Listener) -> bool:
        """Remove the first registration of `listener` for `name`."""
        for sub in self._snapshot(name):
            if sub.listener == listener:
                sub.cancel()
                return True
        return False

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.name)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subs[sub.name]

    def _snapshot(self, name: str) -> List[Subscription]:
        with self._lock:
            return list(self._subs.get(name, []))

    def emit(self, name: str, event: Any = None) -> int:
        """Deliver `event` to every listener of `name`.

        A listener that raises is logged; the rest still run.

        Returns:
            int: number of listeners called.
        """
        count = 0
        # listeners may cancel themselves while we iterate
        for sub in self._snapshot(name):
            if not sub.active:
                continue
            count += 1
            try:
                sub.listener(event)
            except Exception as ex:
                LOGGER.error(f"Listener for '{name}' failed: {ex}", exc_info=True)
        return count

    def listener_count(self, name: Optional[str] = None) -> int:
        with self._lock:
            if name is not None:
                return len(self._subs.get(name, []))
            return sum(len(subs) for subs in self._subs.values())

    def clear(self) -> None:
        """Drop every registration; existing handles become inactive."""
        with self._lock:
            for subs in self._subs.values():
                for sub in subs:
                    sub.active = False
            self._subs.clear()
