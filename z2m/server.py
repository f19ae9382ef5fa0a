"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module server

ServerController: one per configured Zigbee2MQTT gateway. Owns the broker
session, the topology tracker, the value cache, the availability map and
the lookup index, and fans every inbound message out to the nodes that
registered for it.

All state is mutated while holding `_lock`; events are emitted after the
lock is released so listeners may call back into the query methods.
"""

# std libraries
from threading import Event, RLock
from typing import Any, Dict, List, Optional, Tuple

# external libraries
from udi_interface import LOGGER

# personal libraries
from z2m import topics
from z2m.bridge_state import BridgeStateTracker
from z2m.events import (EventHub, Subscription, ConnectivityEvent, BridgeStateEvent,
                        BridgeMessageEvent, MessageEvent, AvailabilityEvent, StoppingEvent,
                        CONNECTIVITY, BRIDGE_STATE, BRIDGE_MESSAGE, MESSAGE, AVAILABILITY,
                        STOPPING, CONNECTED, DISCONNECTED, RECONNECTING, ERROR)
from z2m.lookup import LookupIndex, DEVICES, GROUPS, item_topic_suffix
from z2m.payload import parse_payload, parse_online
from z2m.supervisor import ConnectionSupervisor
from z2m.value_cache import ValueCache

# constants
TOPOLOGY_TIMEOUT = 5.0
PERMIT_JOIN_DEFAULT = 180
LOG_LEVELS = ('info', 'debug', 'warning', 'error')
DEVICES_KEY = 'z2m_devices'
GROUPS_KEY = 'z2m_groups'

COLOR_UNKNOWN = 'blue'
COLOR_OFFLINE = 'red'
COLOR_ONLINE = 'green'

SENT = {'success': True, 'description': 'command sent'}


def error_result(description: str) -> Dict[str, Any]:
    return {'error': True, 'description': description}


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        value = value.strip().lower()
        return value == 'true' or (value.isdigit() and int(value) > 0)
    return False


class ServerController:
    """Connection and state cache for one Zigbee2MQTT gateway.

    Args:
        config: host, port, user, password, base_topic, qos, tls,
            tls_insecure, client_id.
        storage: keyed get / item assignment store that survives restarts
            (the Polyglot customdata object); a dict is used if omitted.
        name: used for the default MQTT client id and log lines.
    """

    def __init__(self, config: Dict[str, Any], storage: Any = None, name: str = 'z2m'):
        self.config = dict(config or {})
        self.name = name
        self.storage = storage if storage is not None else {}
        self.base_topic = topics.base_topic(self.config.get('base_topic'))
        self.qos = self._qos(self.config.get('qos'))

        self._lock = RLock()
        self.events = EventHub()
        self.cache = ValueCache()
        self.availability: Dict[str, bool] = {}
        self.tracker = BridgeStateTracker(self._restore(DEVICES_KEY), self._restore(GROUPS_KEY))
        self.index = LookupIndex(self.tracker, self.cache, self.get_topic)
        self.supervisor = ConnectionSupervisor(on_message=self.handle_message)
        self._transport_subs: List[Subscription] = []
        self._warmed: set = set()
        self.closed = False

    @staticmethod
    def _qos(value: Any) -> int:
        try:
            qos = int(value)
        except (TypeError, ValueError):
            return 0
        return qos if qos in (0, 1, 2) else 0

    # ----- lifecycle -----

    def start(self) -> bool:
        """Wire transport events, register the base subscription and connect.

        Returns:
            bool: False when the connection could not be attempted (bad host);
            the controller then stays alive but inert.
        """
        sup = self.supervisor
        self._transport_subs = [
            sup.events.on(CONNECTED, self._on_transport_connected),
            sup.events.on(DISCONNECTED, self._on_transport_lost),
            sup.events.on(ERROR, self._on_transport_lost),
            sup.events.on(RECONNECTING, self._on_transport_reconnecting),
        ]
        sup.subscribe(self.get_topic('/#'), self.qos)
        connect_config = {
            'host': self.config.get('host'),
            'port': self.config.get('port'),
            'user': self.config.get('user'),
            'password': self.config.get('password'),
            'tls': self.config.get('tls'),
            'tls_insecure': self.config.get('tls_insecure'),
            'client_id': self.config.get('client_id') or f'Polyglot-Z2M-{self.name}',
        }
        return sup.connect(connect_config)

    def close(self) -> None:
        """Tear down in order: tell consumers, drop listeners, end the session."""
        if self.closed:
            return
        LOGGER.info(f"{self.name}: stopping")
        self.events.emit(STOPPING, StoppingEvent())
        self.closed = True
        self.events.clear()
        for sub in self._transport_subs:
            sub.cancel()
        self._transport_subs = []
        with self._lock:
            self.cache.clear()
        self.supervisor.close()

    @property
    def connected(self) -> bool:
        return self.supervisor.connected

    @property
    def bridge_state(self) -> str:
        return self.tracker.state

    @property
    def bridge_info(self) -> Optional[Dict[str, Any]]:
        return self.tracker.info

    @property
    def devices(self) -> Optional[List[Dict[str, Any]]]:
        return self.tracker.devices

    @property
    def groups(self) -> Optional[List[Dict[str, Any]]]:
        return self.tracker.groups

    def on(self, name: str, listener) -> Subscription:
        return self.events.on(name, listener)

    def off(self, name: str, listener) -> bool:
        return self.events.off(name, listener)

    # ----- transport events -----

    def _on_transport_connected(self, event: ConnectivityEvent) -> None:
        with self._lock:
            self.tracker.set_transport(True)
        self.events.emit(CONNECTIVITY, event)

    def _on_transport_lost(self, event: Any) -> None:
        connected = self.supervisor.connected
        with self._lock:
            if not connected:
                self.tracker.set_transport(False)
        reason = event.reason if isinstance(event, ConnectivityEvent) else str(event)
        self.events.emit(CONNECTIVITY, ConnectivityEvent(connected, reason))

    def _on_transport_reconnecting(self, _event: Any) -> None:
        # values are re-sent as retained messages after resubscribe
        with self._lock:
            self.cache.clear()

    # ----- persistence -----

    def _restore(self, key: str) -> Optional[List[Dict[str, Any]]]:
        try:
            value = self.storage.get(key)
        except Exception as ex:
            LOGGER.warning(f"Could not read {key} from storage: {ex}")
            return None
        return value if isinstance(value, list) else None

    def _persist(self, key: str, value: Any) -> None:
        try:
            self.storage[key] = value
        except Exception as ex:
            LOGGER.warning(f"Could not save {key} to storage: {ex}")

    # ----- topics -----

    def get_base_topic(self) -> str:
        return self.base_topic

    def get_topic(self, suffix: str) -> str:
        return topics.get_topic(self.base_topic, suffix)

    # ----- queries -----

    def _topology_ready(self, with_groups: bool) -> bool:
        return self.tracker.devices is not None and (not with_groups or self.tracker.groups is not None)

    def _with_values(self, items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        merged = []
        for item in items or []:
            cached = self.cache.get(self.get_topic(item_topic_suffix(item)))
            if cached is not None:
                item = dict(item)
                item['current_values'] = cached.value
            merged.append(item)
        return merged

    def _snapshot(self) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        with self._lock:
            return self._with_values(self.tracker.devices), self._with_values(self.tracker.groups)

    def get_devices(self, with_groups: bool = False,
                    timeout: float = TOPOLOGY_TIMEOUT) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Return (devices, groups) with cached values merged into copies.

        If no snapshot is known yet, ask the gateway for one and wait up to
        `timeout` seconds. On timeout both lists are empty and an error is
        logged; this never raises.

        Must not be called from a listener on the broker thread, the reply
        would be queued behind the wait.
        """
        if self._topology_ready(with_groups):
            LOGGER.debug('Using cached devices')
            return self._snapshot()

        LOGGER.info('Waiting for device list')
        arrived = Event()

        def check_topology(_event):
            if self._topology_ready(with_groups):
                arrived.set()

        sub = self.events.on(BRIDGE_MESSAGE, check_topology)
        try:
            if self.tracker.devices is None:
                self.supervisor.publish(self.get_topic(topics.REQUEST_DEVICES), '', qos=self.qos)
            if self.tracker.groups is None:
                self.supervisor.publish(self.get_topic(topics.REQUEST_GROUPS), '', qos=self.qos)
            if not self._topology_ready(with_groups):
                arrived.wait(timeout)
        finally:
            sub.cancel()

        if self._topology_ready(with_groups):
            return self._snapshot()
        LOGGER.error('Error: getDevices timeout')
        return [], []

    def get_device_by_key(self, key: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.index.resolve(key, DEVICES)

    def get_group_by_key(self, key: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.index.resolve(key, GROUPS)

    def get_device_or_group_by_key(self, key: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.index.resolve_device_or_group(key)

    def get_availability_color(self, topic: str) -> str:
        """blue while unknown, green online, red offline."""
        if topic in self.availability:
            return COLOR_ONLINE if self.availability[topic] else COLOR_OFFLINE
        return COLOR_UNKNOWN

    def server_state(self) -> Dict[str, Any]:
        """Combined transport and gateway status, with topology counts."""
        connected = self.connected
        has_client = self.supervisor.client is not None
        bridge = self.tracker.state
        if not connected or not has_client:
            state, online, component = 'mqtt_offline', False, 'mqtt'
        elif bridge == 'online':
            state, online, component = 'online', True, None
        elif bridge in ('offline', 'waiting'):
            state, online, component = 'z2m_offline', False, 'zigbee2mqtt'
        else:
            state, online, component = 'unknown', False, 'unknown'
        summary = self.tracker.summary()
        return {
            'online': online,
            'state': state,
            'errorComponent': component,
            'mqtt': {
                'connected': connected,
                'has_client': has_client,
                'host': self.config.get('host') or 'Unknown',
                'port': self.config.get('port') or 1883,
            },
            'zigbee2mqtt': {
                'bridge_state': bridge,
                'base_topic': self.base_topic,
                'version': summary['version'],
                'permit_join': summary['permit_join'],
                'log_level': summary['log_level'],
            },
            'stats': {
                'devices': len(self.tracker.devices or []),
                'groups': len(self.tracker.groups or []),
            },
        }

    # ----- message ingestion -----

    def handle_message(self, topic: str, raw: Any) -> None:
        """Entry point for every inbound broker message. Never raises."""
        if self.closed:
            return
        try:
            self._dispatch(topic, raw)
        except Exception as ex:
            LOGGER.error(f"Failed to process message from {topic}: {ex}", exc_info=True)

    def _dispatch(self, topic: str, raw: Any) -> None:
        kind, name = topics.classify(self.base_topic, topic)
        if kind == topics.KIND_BRIDGE:
            self._handle_bridge(topic, raw)
        elif kind == topics.KIND_COMMAND:
            return
        elif kind == topics.KIND_AVAILABILITY:
            self._handle_availability(topic, name, raw)
        elif kind == topics.KIND_STATE:
            self._handle_state(topic, name, raw)
        else:
            LOGGER.debug(f"Ignoring foreign topic {topic}")

    def _handle_bridge(self, topic: str, raw: Any) -> None:
        emits = []
        requests = []
        with self._lock:
            if topic == self.get_topic(topics.BRIDGE_DEVICES):
                if self.tracker.update_devices(raw):
                    self._persist(DEVICES_KEY, self.tracker.devices)
                    requests = self._warm_up_requests()
            elif topic == self.get_topic(topics.BRIDGE_GROUPS):
                if self.tracker.update_groups(raw):
                    self._persist(GROUPS_KEY, self.tracker.groups)
            elif topic == self.get_topic(topics.BRIDGE_STATE):
                online, changed = self.tracker.update_state(raw)
                emits.append((BRIDGE_STATE, BridgeStateEvent(topic, online, changed)))
            elif topic == self.get_topic(topics.BRIDGE_INFO):
                self.tracker.update_info(raw)
        for get_topic, payload in requests:
            self.supervisor.publish(get_topic, payload, qos=self.qos)
        for name, event in emits:
            self.events.emit(name, event)
        self.events.emit(BRIDGE_MESSAGE, BridgeMessageEvent(topic, parse_payload(raw).value))

    def _warm_up_requests(self) -> List[Tuple[str, Dict[str, str]]]:
        """One /get per newly seen device that has no cached value yet."""
        requests = []
        for device in self.tracker.devices or []:
            if not isinstance(device, dict) or device.get('type') == 'Coordinator':
                continue
            ident = device.get('ieee_address') or device.get('friendly_name')
            if ident in self._warmed:
                continue
            self._warmed.add(ident)
            dtopic = self.get_topic(item_topic_suffix(device))
            if dtopic in self.cache:
                continue
            props = self.tracker.readable_properties(device)
            if props:
                requests.append((dtopic + topics.GET_SUFFIX, {prop: '' for prop in props}))
        return requests

    def _handle_availability(self, topic: str, name: Optional[str], raw: Any) -> None:
        online = parse_online(raw)
        with self._lock:
            self.availability[topics.strip_availability(topic)] = online
            item = self.index.resolve_device_or_group(name)
        self.events.emit(AVAILABILITY, AvailabilityEvent(topic, online, item))

    def _handle_state(self, topic: str, name: Optional[str], raw: Any) -> None:
        payload = parse_payload(raw)
        with self._lock:
            stored = self.cache.upsert(topic, payload)
            item = self.index.resolve_device_or_group(name)
        self.events.emit(MESSAGE, MessageEvent(topic, payload.value, stored.value, item))

    # ----- commands -----

    def _send(self, suffix_or_topic: str, payload: Any = '', full_topic: bool = False) -> Dict[str, Any]:
        topic = suffix_or_topic if full_topic else self.get_topic(suffix_or_topic)
        if not self.supervisor.publish(topic, payload, qos=self.qos):
            return error_result('MQTT not connected')
        return dict(SENT)

    def restart(self) -> Dict[str, Any]:
        LOGGER.info('Restarting zigbee2mqtt...')
        return self._send(topics.REQUEST_RESTART)

    def set_log_level(self, level: Any) -> Dict[str, Any]:
        if level not in LOG_LEVELS:
            level = 'info'
        result = self._send(topics.REQUEST_OPTIONS, {'options': {'advanced': {'log_level': level}}})
        LOGGER.info(f'Log Level was set to: {level}')
        return result

    def set_permit_join(self, value: Any, time: Any = None) -> Dict[str, Any]:
        """Open or close the pairing window.

        Args:
            value: truthy to enable ('true', positive numbers, True).
            time: window in seconds; anything but a positive integer falls
                back to 180.
        """
        if not self.connected:
            LOGGER.warning('Cannot set permit_join: MQTT not connected')
            return error_result('MQTT not connected')

        window = PERMIT_JOIN_DEFAULT
        if time is not None and not isinstance(time, bool):
            try:
                parsed = int(time)
            except (TypeError, ValueError):
                parsed = 0
            if parsed > 0:
                window = parsed
            else:
                LOGGER.debug('Invalid permit join time, using default')

        if _truthy(value):
            payload = {'value': True, 'time': window}
            LOGGER.info(f'Permit Join ENABLED for {window} seconds')
        else:
            payload = {'value': False}
            LOGGER.info('Permit Join DISABLED')
        result = self._send(topics.REQUEST_PERMIT_JOIN, payload)
        if 'success' in result:
            result['time'] = window
        return result

    def rename_device(self, key: Any, new_name: Any) -> Dict[str, Any]:
        device = self.get_device_by_key(key)
        if not device:
            return error_result('no such device')
        if not isinstance(new_name, str) or not new_name.strip():
            return error_result('can not be empty')
        LOGGER.info(f'Rename device {key} to {new_name}')
        return self._send(topics.REQUEST_DEVICE_RENAME, {'from': device.get('friendly_name'), 'to': new_name})

    def remove_device(self, key: Any) -> Dict[str, Any]:
        device = self.get_device_by_key(key)
        if not device:
            return error_result('no such device')
        LOGGER.info(f"Remove device: {device.get('friendly_name')}")
        return self._send(topics.REQUEST_DEVICE_REMOVE, {'id': key, 'force': True})

    def set_device_options(self, key: Any, options: Dict[str, Any]) -> Dict[str, Any]:
        device = self.get_device_by_key(key)
        if not device:
            return error_result('no such device')
        payload = {'id': key, 'options': options}
        LOGGER.info(f"Set device options for \"{device.get('friendly_name')}\" : {payload}")
        return self._send(topics.REQUEST_DEVICE_OPTIONS, payload)

    def rename_group(self, key: Any, new_name: Any) -> Dict[str, Any]:
        group = self.get_group_by_key(key)
        if not group:
            return error_result('no such group')
        if not isinstance(new_name, str) or not new_name.strip():
            return error_result('can not be empty')
        LOGGER.info(f'Rename group {key} to {new_name}')
        return self._send(topics.REQUEST_GROUP_RENAME, {'from': group.get('friendly_name'), 'to': new_name})

    def remove_group(self, key: Any) -> Dict[str, Any]:
        group = self.get_group_by_key(key)
        if not group:
            return error_result('no such group')
        LOGGER.info(f"Remove group: {group.get('friendly_name')}")
        return self._send(topics.REQUEST_GROUP_REMOVE, {'id': key})

    def add_group(self, name: Any) -> Dict[str, Any]:
        if not isinstance(name, str) or not name.strip():
            return error_result('can not be empty')
        LOGGER.info(f'Add group: {name}')
        return self._send(topics.REQUEST_GROUP_ADD, {'friendly_name': name})

    def add_device_to_group(self, device_key: Any, group_key: Any) -> Dict[str, Any]:
        device = self.get_device_by_key(device_key)
        if not device:
            return error_result('no such device')
        group = self.get_group_by_key(group_key)
        if not group:
            return error_result('no such group')
        LOGGER.info(f"Adding device: {device.get('friendly_name')} to group: {group.get('friendly_name')}")
        return self._send(topics.REQUEST_GROUP_MEMBERS_ADD, {'group': group_key, 'device': device_key})

    def remove_device_from_group(self, device_key: Any, group_key: Any) -> Dict[str, Any]:
        # the device may already be gone from the topology, only the group must exist
        device = self.get_device_by_key(device_key) or {'friendly_name': device_key}
        group = self.get_group_by_key(group_key)
        if not group:
            return error_result('no such group')
        LOGGER.info(f"Removing device: {device.get('friendly_name')} from group: {group.get('friendly_name')}")
        return self._send(topics.REQUEST_GROUP_MEMBERS_REMOVE, {'group': group_key, 'device': device_key})

    def send_command(self, key: Any, payload: Any) -> Dict[str, Any]:
        """Publish `payload` to <friendly_name>/set of a device or group."""
        item = self.get_device_or_group_by_key(key)
        if not item:
            return error_result('no such device')
        if not isinstance(payload, (dict, list)):
            payload = str(payload)
        topic = self.get_topic(item_topic_suffix(item)) + topics.SET_SUFFIX
        return self._send(topic, payload, full_topic=True)

    def request_state(self, key: Any, properties: Optional[List[str]] = None) -> Dict[str, Any]:
        """Ask the gateway to read and re-publish properties of a device or group."""
        item = self.get_device_or_group_by_key(key)
        if not item:
            return error_result('no such device')
        props = properties or self.tracker.readable_properties(item) or ['state']
        topic = self.get_topic(item_topic_suffix(item)) + topics.GET_SUFFIX
        return self._send(topic, {prop: '' for prop in props}, full_topic=True)
