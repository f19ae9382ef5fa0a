"""Node classes used by the Zigbee2MQTT Node Server."""

from .Z2MBridge import Z2MBridge as Z2MBridge
from .Z2MDevice import Z2MDevice as Z2MDevice
from .Z2MGroup import Z2MGroup as Z2MGroup
from .Controller import Controller as Controller
