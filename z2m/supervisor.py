"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module supervisor

Owns the single paho-mqtt session to the broker for one gateway. Reconnect
and backoff are left to paho's network loop; this class tracks the
connectivity flag, re-issues subscriptions on every (re)connect and turns
paho callbacks into lifecycle events.
"""

# std libraries
import json
from typing import Any, Callable, Dict, Optional, Set

# external libraries
from udi_interface import LOGGER
from paho.mqtt.client import Client, MQTT_ERR_SUCCESS
from paho.mqtt.enums import CallbackAPIVersion

# personal libraries
from z2m.events import (EventHub, ConnectivityEvent, CONNECTED, DISCONNECTED,
                        RECONNECTING, OFFLINE, CLOSED, ERROR)

# constants
DEFAULT_PORT = 1883
KEEPALIVE = 30
CONNECT_TIMEOUT = 15
RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 30
WILL_TOPIC = 'udi/zigbee2mqtt/status'
WILL_PAYLOAD = 'offline'

MessageHandler = Callable[[str, bytes], None]


def valid_port(port: Any) -> int:
    """Return `port` as an int in 1..65535, else DEFAULT_PORT."""
    try:
        port = int(port)
    except (TypeError, ValueError):
        return DEFAULT_PORT
    if port < 1 or port > 65535:
        return DEFAULT_PORT
    return port


class ConnectionSupervisor:
    """One long-lived broker session.

    Attributes:
        connected (bool): True between a successful CONNACK and the next
            disconnect, failure or close.
        events (EventHub): transport lifecycle events.
        client (Client): the paho client, None before connect and after close.
    """

    def __init__(self, on_message: Optional[MessageHandler] = None):
        self.on_message = on_message
        self.events = EventHub()
        self.client: Optional[Client] = None
        self.connected = False
        self.closed = False
        self.subscriptions: Dict[str, int] = {}
        self._ever_connected = False

    def connect(self, config: Dict[str, Any]) -> bool:
        """Create the client and start connecting in the background.

        Args:
            config: host, port, user, password, client_id, tls,
                tls_insecure, will_topic, will_payload.

        Returns:
            bool: False if the configuration is unusable, True once paho's
            loop has been started.
        """
        host = config.get('host')
        if not isinstance(host, str) or not host.strip():
            LOGGER.error("MQTT Host not defined or invalid")
            return False
        host = host.strip()
        port = valid_port(config.get('port'))

        client = Client(CallbackAPIVersion.VERSION2,
                        client_id=config.get('client_id') or '',
                        clean_session=True)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_connect_fail = self._on_connect_fail
        client.on_pre_connect = self._on_pre_connect
        client.on_message = self._on_message

        if config.get('user'):
            client.username_pw_set(config['user'], config.get('password'))
        if config.get('tls'):
            client.tls_set()
            if config.get('tls_insecure'):
                client.tls_insecure_set(True)
        client.will_set(config.get('will_topic') or WILL_TOPIC,
                        payload=config.get('will_payload') or WILL_PAYLOAD,
                        qos=1, retain=False)
        client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY, max_delay=RECONNECT_MAX_DELAY)
        client.connect_timeout = CONNECT_TIMEOUT

        self.client = client
        self.closed = False
        try:
            client.connect_async(host, port, keepalive=KEEPALIVE)
            client.loop_start()
        except Exception as ex:
            LOGGER.error(f"Error connecting to MQTT broker {host}:{port}: {ex}")
            self._set_connected(False)
            self.events.emit(ERROR, ex)
            return False
        LOGGER.info(f"MQTT connecting to {host}:{port}")
        return True

    def _set_connected(self, connected: bool) -> None:
        self.connected = connected

    def _on_pre_connect(self, _client, _userdata):
        if self._ever_connected:
            LOGGER.info("MQTT Reconnect attempt...")
            self.events.emit(RECONNECTING, ConnectivityEvent(False, 'reconnecting'))

    def _on_connect(self, _client, _userdata, _flags, reason_code, _properties=None):
        if getattr(reason_code, 'is_failure', reason_code != 0):
            LOGGER.error(f"MQTT Connect failed with rc:{reason_code}")
            self._set_connected(False)
            self.events.emit(ERROR, ConnectivityEvent(False, str(reason_code)))
            return
        LOGGER.info("MQTT Connected")
        self._ever_connected = True
        self._set_connected(True)
        self._resubscribe()
        self.events.emit(CONNECTED, ConnectivityEvent(True))

    def _on_disconnect(self, _client, _userdata, _flags, reason_code, _properties=None):
        self._set_connected(False)
        reason = str(reason_code)
        if getattr(reason_code, 'is_failure', reason_code != 0):
            LOGGER.warning(f"MQTT disconnected ({reason}), paho will reconnect")
            self.events.emit(DISCONNECTED, ConnectivityEvent(False, reason))
            self.events.emit(OFFLINE, ConnectivityEvent(False, reason))
        else:
            LOGGER.info("MQTT graceful disconnection")
            self.events.emit(DISCONNECTED, ConnectivityEvent(False, reason))

    def _on_connect_fail(self, _client, _userdata):
        LOGGER.error("MQTT connection attempt failed")
        self._set_connected(False)
        self.events.emit(ERROR, ConnectivityEvent(False, 'connect failed'))

    def _on_message(self, _client, _userdata, message):
        if self.closed or self.on_message is None:
            return
        self.on_message(message.topic, message.payload)

    def _resubscribe(self) -> None:
        for topic, qos in self.subscriptions.items():
            self._send_subscribe(topic, qos)

    def _send_subscribe(self, topic: str, qos: int) -> None:
        result, mid = self.client.subscribe(topic, qos)
        if result == MQTT_ERR_SUCCESS:
            LOGGER.info(f"Subscribed to {topic} MID: {mid}, res: {result}")
        else:
            LOGGER.error(f"Failed to subscribe {topic} MID: {mid}, res: {result}")
            self.events.emit(ERROR, ConnectivityEvent(self.connected, f'subscribe {topic} failed'))

    def subscribe(self, topic: str, qos: int = 0) -> None:
        """Track `topic`; sent now if connected and again after every reconnect."""
        if self.subscriptions.get(topic) == qos:
            return
        self.subscriptions[topic] = qos
        if self.client is not None and self.connected:
            self._send_subscribe(topic, qos)

    def unsubscribe(self, topic: str) -> None:
        if topic not in self.subscriptions:
            return
        del self.subscriptions[topic]
        if self.client is not None:
            LOGGER.info(f"MQTT Unsubscribe from mqtt topic: {topic}")
            self.client.unsubscribe(topic)

    def publish(self, topic: str, payload: Any = '', qos: int = 0, retain: bool = False) -> bool:
        """Fire-and-forget publish; never raises.

        Dicts and lists are JSON encoded, None becomes an empty payload.

        Returns:
            bool: True if paho accepted the message.
        """
        if self.client is None:
            LOGGER.warning(f"mqtt_pub: no MQTT session, dropped {topic}")
            return False
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        elif payload is None:
            payload = ''
        LOGGER.debug(f"mqtt_pub: topic: {topic}, message: {payload}")
        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
        except Exception as ex:
            LOGGER.error(f"Failed to publish to {topic}: {ex}")
            self.events.emit(ERROR, ex)
            return False
        if info.rc != MQTT_ERR_SUCCESS:
            LOGGER.warning(f"Publish to {topic} not sent now, rc: {info.rc}")
            return False
        return True

    def close(self) -> None:
        """Tear the session down without waiting for a graceful drain.

        Listeners and paho callbacks are removed before disconnecting so a
        late disconnect callback cannot re-enter application code.
        """
        client = self.client
        self.closed = True
        if client is not None:
            for topic in list(self.subscriptions):
                self.unsubscribe(topic)
        self.subscriptions.clear()
        self.events.emit(CLOSED, ConnectivityEvent(False, 'closed'))
        self.events.clear()
        self._set_connected(False)
        if client is None:
            return
        client.on_connect = None
        client.on_disconnect = None
        client.on_connect_fail = None
        client.on_pre_connect = None
        client.on_message = None
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as ex:
            LOGGER.warning(f"Error closing MQTT client: {ex}")
        self.client = None
        LOGGER.info("MQTT connection closed and resources freed")
