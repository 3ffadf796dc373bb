"""Connection state machine with bounded exponential-backoff reconnection."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from time import monotonic
from typing import Any, Awaitable, Callable, ContextManager, Dict, List, Optional, Union

from reactlink.config import LinkConfig
from reactlink.connector import SerialSession, SessionConfig
from reactlink.errors import ErrorKind, LinkError, NotConnected, TransportFailure
from reactlink.events import Channel, ConnectEvent, DisconnectEvent, ErrorEvent, EventEmitter
from reactlink.metrics import MetricsLogger
from reactlink.protocol import Command, InboundMessage, ProtocolCodec, encode_command
from reactlink.scanner import find_device

logger = logging.getLogger(__name__)

MessageSink = Callable[[List[InboundMessage]], Any]
PortFinder = Callable[[], Awaitable[str]]
SessionFactory = Callable[[SessionConfig], Any]
Sleep = Callable[[float], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def backoff_delay(attempt: int, base: float = 2.0) -> float:
    """Delay in seconds before reconnection ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    return base * (2 ** (attempt - 1))


class ConnectionManager:
    """Own the single serial session and keep it connected.

    ``connect()`` is a no-op while connecting or connected. Failed opens and
    mid-session transport faults schedule a retry after
    ``base * 2**(attempt-1)`` seconds, up to ``max_reconnect_attempts``;
    after that a ``reconnect_exhausted`` error is published and retrying
    stops until ``connect()`` is called again. The attempt counter only
    resets once a connection has stayed up for ``stable_after`` seconds, so
    a device that faults right after opening still runs out of attempts.

    A manual ``disconnect()`` never schedules a retry. It cancels a pending
    retry, including one that is already opening, and waits for a direct
    ``connect()`` in flight to back out before returning.
    """

    def __init__(
        self,
        config: LinkConfig,
        emitter: EventEmitter,
        sink: MessageSink,
        *,
        codec: Optional[ProtocolCodec] = None,
        on_connected: Optional[Callable[[str], Any]] = None,
        on_disconnected: Optional[Callable[[str], Any]] = None,
        session_factory: Optional[SessionFactory] = None,
        port_finder: Optional[PortFinder] = None,
        metrics: Optional[MetricsLogger] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.codec = codec or ProtocolCodec()
        self._emitter = emitter
        self._sink = sink
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._session_factory: SessionFactory = session_factory or SerialSession
        self._port_finder = port_finder
        self._metrics = metrics
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.port: Optional[str] = None
        self.reconnect_attempts = 0
        self.last_error: Optional[ErrorEvent] = None
        self._session: Optional[Any] = None
        self._read_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._manual_disconnect = False
        self._connected_at: Optional[float] = None
        self._settled = asyncio.Event()
        self._settled.set()

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def baudrate(self) -> int:
        return self.config.baudrate

    async def connect(self) -> bool:
        """Open the device; returns ``False`` if busy or if the attempt failed."""
        if self.state is not ConnectionState.DISCONNECTED:
            logger.debug("connect() ignored while %s", self.state.value)
            return False
        self._manual_disconnect = False
        if not self.reconnect_pending and self.reconnect_attempts >= self.config.max_reconnect_attempts:
            self.reconnect_attempts = 0
        return await self._open()

    async def disconnect(self, reason: str = "manual") -> None:
        self._manual_disconnect = True
        await self._abort_reconnect()
        self.reconnect_attempts = 0
        if self.state is ConnectionState.CONNECTING:
            # A direct connect() is opening; it sees the flag and backs out.
            await self._settled.wait()

        if self._session is not None and self.connected:
            try:
                await self.send(Command.DISCONNECT)
                await asyncio.sleep(self.config.flush_delay)
            except LinkError as exc:
                logger.debug("Goodbye not delivered: %s", exc)

        session = self._session
        if session is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._session = None
        await self._stop_reader()
        await session.disconnect()
        self._set_state(ConnectionState.DISCONNECTED)
        self._log("disconnect", status="manual", message=reason)
        self._emitter.emit(Channel.DISCONNECT, DisconnectEvent(reason=reason))
        self._notify(self._on_disconnected, reason)

    async def send(self, command: Union[Command, str, bytes], *fields: object) -> None:
        """Single write entry point for every component."""
        session = self._session
        if session is None or not self.connected:
            raise NotConnected("button box is not connected")
        data = command if isinstance(command, bytes) else encode_command(command, *fields)
        try:
            await session.write(data)
        except TransportFailure as exc:
            await self._handle_transport_failure(session, exc)
            raise

    def schedule_reconnection(self) -> Optional[float]:
        """Schedule the next attempt; returns its delay or ``None``."""
        if self._manual_disconnect or self._retry_in_flight():
            return None
        if self.reconnect_attempts >= self.config.max_reconnect_attempts:
            message = f"giving up after {self.reconnect_attempts} reconnection attempt(s)"
            logger.error("Button box unavailable: %s", message)
            self._log("reconnect", status="exhausted", message=message)
            self._emit_error(ErrorKind.RECONNECT_EXHAUSTED, message)
            return None

        self.reconnect_attempts += 1
        delay = backoff_delay(self.reconnect_attempts, self.config.reconnect_base_delay)
        logger.info("Reconnection attempt %d in %.1fs", self.reconnect_attempts, delay)
        self._log("reconnect", status="scheduled", value=delay, extra={"attempt": self.reconnect_attempts})
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        return delay

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "port": self.port,
            "baudrate": self.baudrate,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnect_pending": self.reconnect_pending,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _open(self) -> bool:
        if self.state is not ConnectionState.DISCONNECTED:
            logger.debug("connect() ignored while %s", self.state.value)
            return False

        self._set_state(ConnectionState.CONNECTING)
        attempt = self.reconnect_attempts
        try:
            await self._log_async("connect_attempt", status="pending", extra={"attempt": attempt})
            port = await self._find_port()
            session = self._session_factory(
                SessionConfig(
                    port=port,
                    baudrate=self.config.baudrate,
                    read_timeout=self.config.read_timeout,
                    write_timeout=self.config.write_timeout,
                    metrics=self._metrics,
                    metadata=dict(self.config.metadata),
                )
            )
            with self._metrics_scope(attempt=attempt):
                await session.connect()
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.warning("Connection attempt failed: %s", exc)
            self._log("connect_attempt", status="error", message=str(exc))
            self._emit_error(ErrorKind.CONNECTION, str(exc))
            self.schedule_reconnection()
            return False

        if self._manual_disconnect:
            logger.info("Closing %s: disconnect requested while opening", port)
            await session.disconnect()
            self._set_state(ConnectionState.DISCONNECTED)
            self._log("connect_attempt", status="abandoned", extra={"port": port})
            return False

        self._cancel_reconnect()
        self._session = session
        self.port = port
        self._connected_at = monotonic()
        self.codec.reset()
        self._set_state(ConnectionState.CONNECTED)
        self._read_task = asyncio.create_task(self._read_loop(session))
        self._log("connect_attempt", status="ok", extra={"port": port})
        self._emitter.emit(Channel.CONNECT, ConnectEvent(port=port))

        try:
            await self.send(Command.INIT)
        except LinkError as exc:
            logger.warning("INIT not delivered: %s", exc)
            return False
        self._notify(self._on_connected, port)
        return True

    async def _find_port(self) -> str:
        if self.config.port:
            return self.config.port
        if self._port_finder is not None:
            return await self._port_finder()
        info = await find_device(device_ids=self.config.device_ids, name_hints=self.config.name_hints)
        return info.device

    async def _read_loop(self, session: Any) -> None:
        try:
            while True:
                chunk = await session.read_chunk()
                if not chunk:
                    continue
                messages = self.codec.decode(chunk)
                if messages:
                    self._sink(messages)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not isinstance(exc, TransportFailure):
                logger.exception("Read loop crashed")
            await self._handle_transport_failure(session, exc)

    async def _handle_transport_failure(self, session: Any, exc: BaseException) -> None:
        if self._session is not session:
            return
        self._session = None
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._read_task = None
        with contextlib.suppress(Exception):
            await session.disconnect()

        reason = str(exc) or type(exc).__name__
        logger.warning("Transport failure on %s: %s", self.port, reason)
        self._set_state(ConnectionState.DISCONNECTED)
        self._log("disconnect", status="error", message=reason)
        self._emitter.emit(Channel.DISCONNECT, DisconnectEvent(reason=reason))
        self._emit_error(ErrorKind.TRANSPORT, reason)
        self._notify(self._on_disconnected, reason)
        if self._connected_at is not None and monotonic() - self._connected_at >= self.config.stable_after:
            self.reconnect_attempts = 0
        self._connected_at = None
        self.schedule_reconnection()

    async def _reconnect_after(self, delay: float) -> None:
        # The task stays registered while it opens so disconnect() can cancel it.
        await self._sleep(delay)
        if self._manual_disconnect:
            return
        await self._open()

    def _retry_in_flight(self) -> bool:
        task = self._reconnect_task
        return task is not None and not task.done() and task is not asyncio.current_task()

    async def _abort_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _stop_reader(self) -> None:
        task, self._read_task = self._read_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug("Connection %s -> %s", self.state.value, state.value)
            self.state = state
        if state is ConnectionState.CONNECTING:
            self._settled.clear()
        else:
            self._settled.set()

    def _emit_error(self, kind: ErrorKind, message: str) -> None:
        event = ErrorEvent(type=kind.value, message=message)
        self.last_error = event
        self._emitter.emit(Channel.ERROR, event)

    def _notify(self, callback: Optional[Callable[[str], Any]], value: str) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Connection callback raised")

    def _log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._metrics:
            return
        try:
            self._metrics.log(event, status=status, value=value, message=message, extra=self._payload(extra))
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)

    async def _log_async(self, event: str, *, status: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
        if not self._metrics:
            return
        try:
            await self._metrics.log_async(event, status=status, extra=self._payload(extra))
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)

    def _metrics_scope(self, **extra: Any) -> ContextManager[None]:
        if not self._metrics:
            return contextlib.nullcontext()
        return self._metrics.scope(extra)

    def _payload(self, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.config.metadata)
        if extra:
            payload.update(extra)
        return payload


__all__ = ["ConnectionManager", "ConnectionState", "backoff_delay"]
