"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module value_cache

Bounded, insertion-ordered store of the last payload seen per topic.
"""

# std libraries
from collections import OrderedDict
from typing import Iterator, Optional

# personal libraries
from z2m.payload import ObjectPayload, Payload

# constants
MAX_CACHE_SIZE = 2000


class ValueCache:
    """Last known payload per resolved topic.

    Object payloads merge into an existing object entry; anything else
    replaces it. Every write moves the key to the newest position, and the
    oldest key is evicted once the ceiling is passed.
    """

    def __init__(self, max_entries: int = MAX_CACHE_SIZE):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._values: 'OrderedDict[str, Payload]' = OrderedDict()

    def upsert(self, topic: str, payload: Payload) -> Payload:
        """Merge or replace the entry for `topic` and return the stored payload.

        Args:
            topic: Fully resolved topic.
            payload: Parsed payload.

        Returns:
            Payload: what is now cached for `topic`.
        """
        current = self._values.pop(topic, None)
        if isinstance(current, ObjectPayload) and isinstance(payload, ObjectPayload):
            merged = dict(current.values)
            merged.update(payload.values)
            payload = ObjectPayload(merged)
        self._values[topic] = payload
        if len(self._values) > self.max_entries:
            self._values.popitem(last=False)
        return payload

    def get(self, topic: str) -> Optional[Payload]:
        return self._values.get(topic)

    def has(self, topic: str) -> bool:
        return topic in self._values

    def keys(self) -> Iterator[str]:
        """Topics from oldest to newest."""
        return iter(list(self._values.keys()))

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, topic: str) -> bool:
        return topic in self._values

    def __len__(self) -> int:
        return len(self._values)
