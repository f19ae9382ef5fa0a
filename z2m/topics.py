"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module topics

Builds and parses the Zigbee2MQTT topic namespace under a configurable
base prefix. Pure functions only.
"""

# std libraries
from typing import Optional, Tuple

# constants
DEFAULT_BASE_TOPIC = 'zigbee2mqtt'

BRIDGE = '/bridge/'
BRIDGE_DEVICES = '/bridge/devices'
BRIDGE_GROUPS = '/bridge/groups'
BRIDGE_INFO = '/bridge/info'
BRIDGE_STATE = '/bridge/state'
BRIDGE_EVENT = '/bridge/event'

REQUEST_DEVICES = '/bridge/request/devices/get'
REQUEST_GROUPS = '/bridge/request/groups/get'
REQUEST_RESTART = '/bridge/request/restart'
REQUEST_OPTIONS = '/bridge/request/options'
REQUEST_PERMIT_JOIN = '/bridge/request/permit_join'
REQUEST_DEVICE_RENAME = '/bridge/request/device/rename'
REQUEST_DEVICE_OPTIONS = '/bridge/request/device/options'
REQUEST_DEVICE_REMOVE = '/bridge/device/remove'
REQUEST_GROUP_RENAME = '/bridge/request/group/rename'
REQUEST_GROUP_ADD = '/bridge/request/group/add'
REQUEST_GROUP_REMOVE = '/bridge/request/group/remove'
REQUEST_GROUP_MEMBERS_ADD = '/bridge/request/group/members/add'
REQUEST_GROUP_MEMBERS_REMOVE = '/bridge/request/group/members/remove'

AVAILABILITY_SUFFIX = '/availability'
SET_SUFFIX = '/set'
GET_SUFFIX = '/get'

# topic kinds returned by classify()
KIND_BRIDGE = 'bridge'
KIND_AVAILABILITY = 'availability'
KIND_COMMAND = 'command'
KIND_STATE = 'state'
KIND_FOREIGN = 'foreign'


def base_topic(base: Optional[str]) -> str:
    """Return the base prefix without a trailing slash."""
    topic = base or DEFAULT_BASE_TOPIC
    if topic.endswith('/'):
        topic = topic[:-1]
    return topic


def get_topic(base: Optional[str], suffix: Optional[str]) -> str:
    """Compose base prefix and suffix, making sure exactly one '/' joins them.

    Args:
        base: Configured base topic, None for the default.
        suffix: Path below the base, with or without a leading '/'.

    Returns:
        str: The full topic.
    """
    suffix = suffix or ''
    if suffix and not suffix.startswith('/'):
        suffix = '/' + suffix
    return base_topic(base) + suffix


def friendly_name(base: Optional[str], topic: str) -> Optional[str]:
    """Return the part of `topic` below the base prefix, or None if foreign."""
    prefix = base_topic(base) + '/'
    if not topic.startswith(prefix):
        return None
    name = topic[len(prefix):]
    return name or None


def strip_availability(topic: str) -> str:
    """Return the device base topic of an availability topic."""
    if topic.endswith(AVAILABILITY_SUFFIX):
        return topic[:-len(AVAILABILITY_SUFFIX)]
    return topic


def classify(base: Optional[str], topic: str) -> Tuple[str, Optional[str]]:
    """Classify an inbound topic.

    Order matters: control topics are checked first, then our own command
    echoes, then availability, and anything else under the base is state.

    Returns:
        Tuple[str, Optional[str]]: (kind, friendly name or None). For
        availability topics the name has the marker stripped.
    """
    name = friendly_name(base, topic)
    if name is None:
        return KIND_FOREIGN, None
    if ('/' + name).startswith(BRIDGE):
        return KIND_BRIDGE, None
    if topic.endswith(SET_SUFFIX) or topic.endswith(GET_SUFFIX):
        return KIND_COMMAND, None
    if topic.endswith(AVAILABILITY_SUFFIX):
        return KIND_AVAILABILITY, strip_availability(name)
    return KIND_STATE, name
