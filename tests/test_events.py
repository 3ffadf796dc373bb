"""Ordering and isolation guarantees of the event emitter."""
from __future__ import annotations

import asyncio
import unittest

from reactlink.events import Channel, ConnectEvent, EventEmitter


class EventEmitterTest(unittest.TestCase):
    def test_subscribers_run_in_registration_order(self) -> None:
        emitter = EventEmitter()
        calls = []
        emitter.subscribe(Channel.CONNECT, lambda event: calls.append(("first", event.port)))
        emitter.subscribe("connect", lambda event: calls.append(("second", event.port)))

        delivered = emitter.emit(Channel.CONNECT, ConnectEvent(port="/dev/ttyACM0"))

        self.assertEqual(delivered, 2)
        self.assertEqual(calls, [("first", "/dev/ttyACM0"), ("second", "/dev/ttyACM0")])

    def test_failing_subscriber_does_not_block_the_rest(self) -> None:
        emitter = EventEmitter()
        calls = []

        def _boom(_):
            raise RuntimeError("subscriber bug")

        emitter.subscribe(Channel.ERROR, _boom)
        emitter.subscribe(Channel.ERROR, calls.append)

        with self.assertLogs("reactlink.events", level="ERROR"):
            delivered = emitter.emit(Channel.ERROR, "payload")

        self.assertEqual(delivered, 1)
        self.assertEqual(calls, ["payload"])

    def test_unsubscribe_handle(self) -> None:
        emitter = EventEmitter()
        calls = []
        subscription = emitter.subscribe(Channel.DISCONNECT, calls.append)
        emitter.emit(Channel.DISCONNECT, 1)
        subscription.unsubscribe()
        subscription.unsubscribe()
        emitter.emit(Channel.DISCONNECT, 2)

        self.assertEqual(calls, [1])
        self.assertEqual(emitter.subscriber_count(Channel.DISCONNECT), 0)

    def test_unsubscribe_during_dispatch(self) -> None:
        emitter = EventEmitter()
        calls = []
        holder = {}

        def _once(payload):
            calls.append(("once", payload))
            holder["sub"].unsubscribe()

        holder["sub"] = emitter.subscribe(Channel.BUTTON_PRESS, _once)
        emitter.subscribe(Channel.BUTTON_PRESS, lambda payload: calls.append(("always", payload)))

        emitter.emit(Channel.BUTTON_PRESS, 1)
        emitter.emit(Channel.BUTTON_PRESS, 2)

        self.assertEqual(calls, [("once", 1), ("always", 1), ("always", 2)])

    def test_subscribe_all_tags_channel(self) -> None:
        emitter = EventEmitter()
        seen = []
        emitter.subscribe_all(lambda channel, payload: seen.append((channel, payload)))
        emitter.emit(Channel.CALIBRATION_COMPLETE, "done")
        emitter.emit(Channel.ERROR, "bad")
        self.assertEqual(seen, [(Channel.CALIBRATION_COMPLETE, "done"), (Channel.ERROR, "bad")])

    def test_unknown_channel_name_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            EventEmitter().subscribe("buttonDoubleClick", print)


class AsyncSubscriberTest(unittest.IsolatedAsyncioTestCase):
    async def test_coroutine_subscriber_is_scheduled(self) -> None:
        emitter = EventEmitter()
        received = asyncio.Event()

        async def _handler(payload):
            received.set()

        emitter.subscribe(Channel.CONNECT, _handler)
        emitter.emit(Channel.CONNECT, ConnectEvent(port="COM3"))
        await asyncio.wait_for(received.wait(), timeout=1.0)


if __name__ == "__main__":
    unittest.main()
