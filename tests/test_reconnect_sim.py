"""Simulation tests for the connection manager and its reconnection policy."""
from __future__ import annotations

import asyncio
import csv
import json
import tempfile
import time
import unittest
from pathlib import Path
from typing import Any, List

from fakes import FakeDevice, FakeDeviceFactory, RecordingSleep

from reactlink.config import LinkConfig
from reactlink.connector import SerialSession
from reactlink.errors import DeviceNotFound, NotConnected, TransportFailure
from reactlink.events import Channel, EventEmitter
from reactlink.metrics import MetricsLogger
from reactlink.protocol import ButtonPress
from reactlink.reconnect import ConnectionManager, ConnectionState, backoff_delay


class _QuietSerial:
    """``serial.Serial`` stand-in for a device that accepts writes and never talks."""

    in_waiting = 0

    def __init__(self, **kwargs: Any) -> None:
        self.is_open = True

    def reset_input_buffer(self) -> None:
        pass

    def read(self, size: int = 1) -> bytes:
        time.sleep(0.001)
        return b""

    def write(self, data: bytes) -> int:
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


class BackoffDelayTest(unittest.TestCase):
    def test_doubles_from_base(self) -> None:
        self.assertEqual([backoff_delay(n) for n in range(1, 6)], [2.0, 4.0, 8.0, 16.0, 32.0])
        self.assertEqual(backoff_delay(3, base=0.5), 2.0)
        with self.assertRaises(ValueError):
            backoff_delay(0)


class ConnectionManagerSimulationTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.emitter = EventEmitter()
        self.sleep = RecordingSleep()
        self.factory = FakeDeviceFactory(respond=False)
        self.received: List[Any] = []
        self.events: List[Any] = []
        self.emitter.subscribe_all(lambda channel, payload: self.events.append((channel, payload)))
        self.managers: List[ConnectionManager] = []

    async def asyncTearDown(self) -> None:
        for manager in self.managers:
            await manager.disconnect()

    def _manager(self, **config: Any) -> ConnectionManager:
        config.setdefault("flush_delay", 0.0)
        port_finder = config.pop("port_finder", None)
        session_factory = config.pop("session_factory", self.factory)
        metrics = config.pop("metrics", None)
        manager = ConnectionManager(
            LinkConfig(**config),
            self.emitter,
            self.received.extend,
            session_factory=session_factory,
            port_finder=port_finder,
            metrics=metrics,
            sleep=self.sleep,
        )
        self.managers.append(manager)
        return manager

    def _of(self, channel: Channel) -> List[Any]:
        return [payload for seen, payload in self.events if seen is channel]

    async def _wait_for(self, predicate, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while not predicate():
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout=timeout)

    async def test_failed_discovery_backs_off_then_gives_up(self) -> None:
        available = {"value": False}

        async def finder() -> str:
            if not available["value"]:
                raise DeviceNotFound("no serial port matches the button box identifiers")
            return "/dev/ttyACM0"

        manager = self._manager(port_finder=finder)

        self.assertFalse(await manager.connect())
        await self._wait_for(lambda: any(e.type == "reconnect_exhausted" for e in self._of(Channel.ERROR)))

        self.assertEqual(self.sleep.delays, [2.0, 4.0, 8.0, 16.0, 32.0])
        errors = [event.type for event in self._of(Channel.ERROR)]
        self.assertEqual(errors, ["connection"] * 6 + ["reconnect_exhausted"])
        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertFalse(manager.reconnect_pending)
        self.assertEqual(self.factory.sessions, [])

        available["value"] = True
        self.assertTrue(await manager.connect())
        self.assertEqual(manager.reconnect_attempts, 0)
        self.assertEqual(manager.port, "/dev/ttyACM0")

    async def test_connect_sends_init_and_forwards_messages(self) -> None:
        manager = self._manager(port="/dev/ttyACM0")

        self.assertTrue(await manager.connect())
        self.assertFalse(await manager.connect())

        session = self.factory.last
        self.assertEqual(len(self.factory.sessions), 1)
        self.assertEqual(session.commands, ["INIT"])
        self.assertEqual([event.port for event in self._of(Channel.CONNECT)], ["/dev/ttyACM0"])

        session.feed(b"BTN_PRE")
        session.feed(b"SS:3:777\n")
        await self._wait_for(lambda: self.received)
        self.assertIsInstance(self.received[0], ButtonPress)
        self.assertEqual(self.received[0].button, 3)

    async def test_manual_disconnect_says_goodbye_and_stays_down(self) -> None:
        manager = self._manager(port="COM3")
        await manager.connect()
        session = self.factory.last

        await manager.disconnect()

        self.assertEqual(session.commands, ["INIT", "DISCONNECT"])
        self.assertTrue(session.closed)
        self.assertEqual([event.reason for event in self._of(Channel.DISCONNECT)], ["manual"])
        self.assertFalse(manager.reconnect_pending)
        self.assertEqual(manager.schedule_reconnection(), None)
        self.assertEqual(self.sleep.delays, [])
        with self.assertRaises(NotConnected):
            await manager.send("LED_ON", 0)

    async def test_transport_failure_triggers_reconnect(self) -> None:
        manager = self._manager(port="/dev/ttyACM0")
        await manager.connect()
        first = self.factory.last

        first.unplug("device reports readiness to read but returned no data")
        await self._wait_for(lambda: len(self._of(Channel.CONNECT)) == 2)

        self.assertTrue(first.closed)
        self.assertEqual(self.sleep.delays, [2.0])
        self.assertEqual(len(self.factory.sessions), 2)
        self.assertEqual(self.factory.last.commands, ["INIT"])
        self.assertTrue(manager.connected)
        # The retry is still counted until the new connection proves stable.
        self.assertEqual(manager.reconnect_attempts, 1)
        self.assertEqual(
            [event.type for event in self._of(Channel.ERROR)],
            ["transport"],
        )
        self.assertEqual(len(self._of(Channel.DISCONNECT)), 1)

    async def test_stable_connection_resets_attempt_counter(self) -> None:
        manager = self._manager(port="/dev/ttyACM0", stable_after=0.0)
        await manager.connect()

        self.factory.last.unplug()
        await self._wait_for(lambda: len(self._of(Channel.CONNECT)) == 2)
        self.factory.last.unplug()
        await self._wait_for(lambda: len(self._of(Channel.CONNECT)) == 3)

        self.assertEqual(self.sleep.delays, [2.0, 2.0])
        self.assertTrue(manager.connected)

    async def test_device_that_faults_after_every_open_runs_out_of_attempts(self) -> None:
        flapping = FakeDeviceFactory(respond=False)

        def factory(config: Any) -> Any:
            session = flapping(config)
            session.unplug("device vanished right after opening")
            return session

        manager = self._manager(port="/dev/ttyACM0", session_factory=factory)

        self.assertTrue(await manager.connect())
        await self._wait_for(lambda: any(e.type == "reconnect_exhausted" for e in self._of(Channel.ERROR)))

        self.assertEqual(self.sleep.delays, [2.0, 4.0, 8.0, 16.0, 32.0])
        self.assertEqual(len(flapping.sessions), 6)
        self.assertTrue(all(session.closed for session in flapping.sessions))
        self.assertEqual(
            [event.type for event in self._of(Channel.ERROR)],
            ["transport"] * 6 + ["reconnect_exhausted"],
        )
        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)

    async def test_disconnect_while_connect_is_opening_sticks(self) -> None:
        manager = self._manager(port="/dev/ttyACM0")

        opening = asyncio.create_task(manager.connect())
        await asyncio.sleep(0)
        self.assertEqual(manager.state, ConnectionState.CONNECTING)
        self.assertFalse(await manager.connect())

        await manager.disconnect()

        self.assertFalse(await opening)
        self.assertFalse(manager.connected)
        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(len(self.factory.sessions), 1)
        self.assertTrue(self.factory.last.closed)
        self.assertEqual(self.factory.last.commands, [])
        self.assertEqual(self._of(Channel.CONNECT), [])
        self.assertFalse(manager.reconnect_pending)

    async def test_busy_connect_does_not_undo_a_pending_disconnect(self) -> None:
        held = asyncio.Event()
        sessions: List[FakeDevice] = []

        def factory(config: Any) -> FakeDevice:
            session = FakeDevice(config, respond=False)
            opened = session.connect

            async def slow_connect() -> None:
                await held.wait()
                await opened()

            session.connect = slow_connect
            sessions.append(session)
            return session

        manager = self._manager(port="/dev/ttyACM0", session_factory=factory)
        opening = asyncio.create_task(manager.connect())
        await self._wait_for(lambda: sessions)
        stopping = asyncio.create_task(manager.disconnect())
        await asyncio.sleep(0.01)

        self.assertEqual(manager.state, ConnectionState.CONNECTING)
        self.assertFalse(await manager.connect())
        held.set()
        await stopping

        self.assertFalse(await opening)
        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertEqual(len(sessions), 1)
        self.assertTrue(sessions[0].closed)
        self.assertEqual(self._of(Channel.CONNECT), [])

    async def test_disconnect_cancels_a_retry_that_is_opening(self) -> None:
        release = asyncio.Event()
        calls = {"count": 0}

        async def finder() -> str:
            calls["count"] += 1
            if calls["count"] == 1:
                raise DeviceNotFound("no serial port matches the button box identifiers")
            await release.wait()
            return "/dev/ttyACM0"

        manager = self._manager(port_finder=finder)

        self.assertFalse(await manager.connect())
        await self._wait_for(lambda: calls["count"] == 2)
        self.assertEqual(manager.state, ConnectionState.CONNECTING)
        self.assertTrue(manager.reconnect_pending)

        await manager.disconnect()
        self.assertEqual(manager.state, ConnectionState.DISCONNECTED)
        self.assertFalse(manager.reconnect_pending)

        release.set()
        await asyncio.sleep(0.01)

        self.assertFalse(manager.connected)
        self.assertEqual(self.factory.sessions, [])
        self.assertEqual(self.sleep.delays, [2.0])
        self.assertEqual(manager.reconnect_attempts, 0)
        self.assertEqual(self._of(Channel.CONNECT), [])

    async def test_connection_attempts_are_traced(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            trace = Path(tmp, "trace.csv")
            manager = self._manager(
                port="COM7",
                metadata={"participant": "P02"},
                metrics=MetricsLogger(trace),
                session_factory=lambda config: SerialSession(config, serial_factory=_QuietSerial),
            )

            self.assertTrue(await manager.connect())
            await manager.disconnect()

            with trace.open("r", encoding="utf-8", newline="") as handle:
                rows = list(csv.DictReader(handle))

        self.assertEqual(
            [(row["event"], row["status"]) for row in rows[:3]],
            [("connect_attempt", "pending"), ("transport_open", "ok"), ("connect_attempt", "ok")],
        )
        self.assertEqual(json.loads(rows[0]["extra"]), {"attempt": 0, "participant": "P02"})
        opened = json.loads(rows[1]["extra"])
        self.assertEqual(opened["attempt"], 0)
        self.assertEqual(opened["port"], "COM7")
        self.assertEqual(rows[-1]["event"], "disconnect")

    async def test_write_failure_disconnects_and_reraises(self) -> None:
        manager = self._manager(port="/dev/ttyACM0", max_reconnect_attempts=0)
        await manager.connect()
        session = self.factory.last
        session.fail_writes = True

        with self.assertRaises(TransportFailure):
            await manager.send("CLEAR")

        self.assertFalse(manager.connected)
        self.assertTrue(session.closed)
        self.assertEqual(
            [event.type for event in self._of(Channel.ERROR)],
            ["transport", "reconnect_exhausted"],
        )

    async def test_status_snapshot(self) -> None:
        manager = self._manager(port="COM9")
        await manager.connect()
        status = manager.status()
        self.assertEqual(status["state"], "connected")
        self.assertEqual(status["port"], "COM9")
        self.assertEqual(status["baudrate"], 115200)
        self.assertIsNone(status["last_error"])


if __name__ == "__main__":
    unittest.main()
