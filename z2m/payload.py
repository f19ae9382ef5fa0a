"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module payload

Parse boundary for broker payloads. Zigbee2MQTT sends JSON objects for
most state, but bare strings and numbers also show up, so the result is
a small tagged union instead of an untyped value.
"""

# std libraries
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Union

# external libraries
from udi_interface import LOGGER

# constants
ONLINE = 'online'


@dataclass(frozen=True)
class ObjectPayload:
    """A JSON object payload; merged key by key in the value cache."""
    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def value(self) -> Dict[str, Any]:
        return self.values


@dataclass(frozen=True)
class ScalarPayload:
    """Anything that is not a JSON object: numbers, strings, lists, raw text."""
    value: Any = None


Payload = Union[ObjectPayload, ScalarPayload]


def to_text(raw: Any) -> str:
    """Decode bytes from paho into text; other values pass through str()."""
    if raw is None:
        return ''
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode('utf-8', errors='replace')
    return str(raw)


def parse_json(raw: Any, default: Any = None) -> Any:
    """Decode JSON, returning `default` and logging a warning on failure."""
    text = to_text(raw)
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as ex:
        LOGGER.warning(f"Malformed JSON payload '{text[:80]}': {ex}")
        return default


def parse_payload(raw: Any) -> Payload:
    """Parse a device or group state payload.

    Args:
        raw: bytes or str as delivered by the broker.

    Returns:
        Payload: ObjectPayload for a JSON object, otherwise a ScalarPayload
        holding the decoded JSON value, or the raw text if it is not JSON.
    """
    text = to_text(raw)
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return ScalarPayload(text)
    if isinstance(data, dict):
        return ObjectPayload(dict(data))
    return ScalarPayload(data)


def parse_online(raw: Any) -> bool:
    """Resolve a state or availability payload to online/offline.

    Only `{"state": "online"}` and a bare `online` (quoted or not) are
    online. Everything else, malformed JSON and empty text included, is
    offline.
    """
    text = to_text(raw).strip()
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text == ONLINE
    if isinstance(data, dict):
        return data.get('state') == ONLINE
    return data == ONLINE
