"""
Test suite for EventHub.

Tests cover:
- Registration, emit and cancellation
- Listener failure isolation
- Clearing all listeners
- Registration from several threads
"""

import threading
from unittest.mock import Mock
from z2m.events import EventHub, MESSAGE, STOPPING


class TestEventHub:
    """Tests for EventHub."""

    def test_emit_calls_listeners_in_order(self):
        hub = EventHub()
        calls = []
        hub.on(MESSAGE, lambda e: calls.append(("a", e)))
        hub.on(MESSAGE, lambda e: calls.append(("b", e)))

        assert hub.emit(MESSAGE, 1) == 2
        assert calls == [("a", 1), ("b", 1)]

    def test_emit_without_listeners(self):
        assert EventHub().emit(MESSAGE, None) == 0

    def test_cancel(self):
        hub = EventHub()
        listener = Mock()
        sub = hub.on(MESSAGE, listener)
        sub.cancel()
        sub.cancel()

        hub.emit(MESSAGE, 1)
        listener.assert_not_called()
        assert hub.listener_count(MESSAGE) == 0

    def test_off(self):
        hub = EventHub()
        listener = Mock()
        hub.on(MESSAGE, listener)

        assert hub.off(MESSAGE, listener) is True
        assert hub.off(MESSAGE, listener) is False

    def test_failing_listener_does_not_stop_others(self):
        hub = EventHub()
        good = Mock()
        hub.on(MESSAGE, Mock(side_effect=RuntimeError("boom")))
        hub.on(MESSAGE, good)

        assert hub.emit(MESSAGE, "x") == 2
        good.assert_called_once_with("x")

    def test_listener_may_cancel_itself(self):
        hub = EventHub()
        other = Mock()
        subs = []
        subs.append(hub.on(STOPPING, lambda e: subs[0].cancel()))
        hub.on(STOPPING, other)

        hub.emit(STOPPING)
        other.assert_called_once()
        assert hub.listener_count(STOPPING) == 1

    def test_clear(self):
        hub = EventHub()
        sub = hub.on(MESSAGE, Mock())
        hub.on(STOPPING, Mock())

        hub.clear()
        assert hub.listener_count() == 0
        assert sub.active is False

    def test_concurrent_register_and_cancel(self):
        hub = EventHub()

        def churn():
            for _ in range(2000):
                hub.on(MESSAGE, Mock()).cancel()

        def register():
            for _ in range(2000):
                hub.on(MESSAGE, Mock())

        threads = [threading.Thread(target=churn), threading.Thread(target=register)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert hub.listener_count(MESSAGE) == 2000
