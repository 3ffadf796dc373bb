"""Rate limiting and in-order routing of decoded messages."""
from __future__ import annotations

import asyncio
import unittest

from reactlink.buttons import ButtonStateTracker
from reactlink.calibration import LatencyCalibrator
from reactlink.dispatcher import MessageDispatcher, SlidingWindowLimiter
from reactlink.events import Channel, EventEmitter
from reactlink.protocol import ButtonPress, ButtonRelease, CalibrateResponse, DeviceError, Ready, Status


class _Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _no_send(command, *fields) -> None:
    return None


def _build(clock=None, rate_limit: int = 100):
    emitter = EventEmitter()
    tracker = ButtonStateTracker(emitter, clock=lambda: 1.0)
    calibrator = LatencyCalibrator(_no_send, emitter)
    dispatcher = MessageDispatcher(
        tracker,
        calibrator,
        emitter,
        rate_limit=rate_limit,
        clock=clock or _Clock(),
    )
    return emitter, tracker, dispatcher


class SlidingWindowLimiterTest(unittest.TestCase):
    def test_window_slides(self) -> None:
        limiter = SlidingWindowLimiter(limit=2, window=1.0)
        self.assertTrue(limiter.allow(0.0))
        self.assertTrue(limiter.allow(0.5))
        self.assertFalse(limiter.allow(0.9))
        self.assertTrue(limiter.allow(1.0))
        self.assertFalse(limiter.allow(1.2))
        self.assertTrue(limiter.allow(1.6))

    def test_rejects_bad_arguments(self) -> None:
        with self.assertRaises(ValueError):
            SlidingWindowLimiter(limit=0)
        with self.assertRaises(ValueError):
            SlidingWindowLimiter(window=0)


class MessageDispatcherTest(unittest.TestCase):
    def test_burst_beyond_limit_is_dropped_and_rest_kept_in_order(self) -> None:
        emitter, _, dispatcher = _build()
        seen = []
        emitter.subscribe(Channel.BUTTON_PRESS, lambda event: seen.append(event.device_time))

        accepted = dispatcher.submit_many(
            ButtonPress(button=index % 4, device_time=index, received_at=10.0 + index) for index in range(150)
        )
        handled = dispatcher.drain_pending()

        self.assertEqual(accepted, 100)
        self.assertEqual(handled, 100)
        self.assertEqual(seen, list(range(100)))
        self.assertEqual(dispatcher.metrics.messages_received, 150)
        self.assertEqual(dispatcher.metrics.messages_dropped, 50)
        self.assertEqual(dispatcher.metrics.messages_processed, 100)

    def test_capacity_returns_after_window(self) -> None:
        clock = _Clock()
        _, _, dispatcher = _build(clock=clock, rate_limit=3)
        for _ in range(4):
            dispatcher.submit(Ready(received_at=1.0))
        self.assertEqual(dispatcher.backlog, 3)

        clock.now = 1.0
        self.assertTrue(dispatcher.submit(Ready(received_at=2.0)))
        self.assertEqual(dispatcher.metrics.messages_dropped, 1)

    def test_routes_each_message_kind(self) -> None:
        emitter, tracker, dispatcher = _build()
        errors = []
        releases = []
        emitter.subscribe(Channel.ERROR, errors.append)
        emitter.subscribe(Channel.BUTTON_RELEASE, releases.append)
        status = Status(battery=87.0, temp_c=24.5, uptime=60000.0, received_at=5.0)

        dispatcher.submit_many(
            [
                ButtonPress(button=1, device_time=100, received_at=10.0),
                ButtonRelease(button=1, device_time=180, duration=80, received_at=90.0),
                CalibrateResponse(orig_send_time=1.0, device_recv_time=2.0, request_id=5),
                status,
                DeviceError(text="display fault"),
                Ready(),
            ]
        )
        with self.assertLogs("reactlink.dispatcher", level="ERROR"):
            dispatcher.drain_pending()

        self.assertEqual(tracker.press_counts, [0, 1, 0, 0])
        self.assertEqual(releases[0].hold_duration, 80.0)
        self.assertIs(dispatcher.last_status, status)
        self.assertEqual([(event.type, event.message) for event in errors], [("device", "display fault")])
        self.assertEqual(dispatcher.metrics.messages_processed, 6)

    def test_clear_discards_backlog(self) -> None:
        _, _, dispatcher = _build()
        dispatcher.submit_many([Ready(), Ready()])
        self.assertEqual(dispatcher.clear(), 2)
        self.assertEqual(dispatcher.backlog, 0)


class DispatcherRunTest(unittest.IsolatedAsyncioTestCase):
    async def test_run_drains_in_background(self) -> None:
        emitter, _, dispatcher = _build()
        delivered = asyncio.Event()
        emitter.subscribe(Channel.BUTTON_PRESS, lambda event: delivered.set())

        task = asyncio.create_task(dispatcher.run())
        try:
            dispatcher.submit(ButtonPress(button=0, device_time=None, received_at=3.0))
            await asyncio.wait_for(delivered.wait(), timeout=1.0)
        finally:
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task


if __name__ == "__main__":
    unittest.main()
