"""Serial transport session built on top of pyserial."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Dict, Optional

import serial

from reactlink.errors import ConnectionFailed, TransportFailure
from reactlink.metrics import MetricsLogger
from reactlink.protocol import BAUD_RATE

logger = logging.getLogger(__name__)

SerialFactory = Callable[..., Any]


@dataclass(slots=True)
class SessionConfig:
	"""Configuration bundle for :class:`SerialSession`."""

	port: str
	baudrate: int = BAUD_RATE
	read_timeout: float = 0.05
	write_timeout: float = 1.0
	metrics: Optional[MetricsLogger] = None
	metadata: Optional[Dict[str, Any]] = None


class SerialSession:
	"""Owns one open :class:`serial.Serial` handle.

	Blocking pyserial calls run on worker threads; callers stay on the event
	loop. Faults on an open port surface as :class:`TransportFailure`.
	"""

	def __init__(self, config: SessionConfig, *, serial_factory: Optional[SerialFactory] = None) -> None:
		self.config = config
		self._factory: SerialFactory = serial_factory or serial.Serial
		self._serial: Optional[Any] = None
		self._lock = asyncio.Lock()
		self._write_lock = asyncio.Lock()
		self.bytes_read = 0
		self.bytes_written = 0

	@property
	def port(self) -> str:
		return self.config.port

	@property
	def is_open(self) -> bool:
		return self._serial is not None and bool(getattr(self._serial, "is_open", False))

	# ------------------------------------------------------------------
	# Lifecycle helpers
	# ------------------------------------------------------------------
	async def connect(self) -> None:
		async with self._lock:
			if self.is_open:
				return
			try:
				with self._open_timer():
					self._serial = await self._open_in_thread()
			except (serial.SerialException, OSError, ValueError) as exc:
				logger.warning("Opening %s failed: %s", self.port, exc)
				raise ConnectionFailed(f"could not open {self.port}: {exc}") from exc
			logger.info("Opened %s at %d baud", self.port, self.config.baudrate)

	async def _open_in_thread(self) -> Any:
		opening = asyncio.ensure_future(asyncio.to_thread(self._open))
		try:
			return await asyncio.shield(opening)
		except asyncio.CancelledError:
			# The worker thread cannot be interrupted; close what it opens.
			opening.add_done_callback(self._close_abandoned)
			raise

	def _close_abandoned(self, opening: "asyncio.Future[Any]") -> None:
		if opening.cancelled() or opening.exception() is not None:
			return
		try:
			opening.result().close()
		except Exception as exc:
			logger.warning("Closing abandoned handle for %s failed: %s", self.port, exc)
			return
		self._metrics_log("transport_close", status="abandoned")
		logger.info("Closed %s after its open was cancelled", self.port)

	async def disconnect(self) -> None:
		async with self._lock:
			handle, self._serial = self._serial, None
			if handle is None:
				return
			try:
				await asyncio.to_thread(handle.close)
				self._metrics_log("transport_close", status="ok")
			except Exception as exc:
				self._metrics_log("transport_close", status="error", message=str(exc))
				logger.warning("Closing %s encountered error: %s", self.port, exc)

	async def __aenter__(self) -> "SerialSession":
		await self.connect()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
		await self.disconnect()

	# ------------------------------------------------------------------
	# I/O
	# ------------------------------------------------------------------
	async def write(self, data: bytes) -> None:
		handle = self._require()
		async with self._write_lock:
			try:
				await asyncio.to_thread(self._write_all, handle, data)
			except (serial.SerialException, OSError) as exc:
				raise TransportFailure(f"write to {self.port} failed: {exc}") from exc
		self.bytes_written += len(data)

	async def read_chunk(self) -> bytes:
		"""Return whatever is available, or ``b""`` once the read timeout lapses."""
		handle = self._require()
		try:
			data = await asyncio.to_thread(self._read_available, handle)
		except (serial.SerialException, OSError, TypeError, AttributeError) as exc:
			raise TransportFailure(f"read from {self.port} failed: {exc}") from exc
		self.bytes_read += len(data)
		return data

	def _open(self) -> Any:
		handle = self._factory(
			port=self.config.port,
			baudrate=self.config.baudrate,
			timeout=self.config.read_timeout,
			write_timeout=self.config.write_timeout,
		)
		with contextlib.suppress(Exception):
			handle.reset_input_buffer()
		return handle

	@staticmethod
	def _write_all(handle: Any, data: bytes) -> None:
		handle.write(data)
		handle.flush()

	@staticmethod
	def _read_available(handle: Any) -> bytes:
		waiting = handle.in_waiting
		return bytes(handle.read(waiting or 1))

	def _require(self) -> Any:
		if not self.is_open:
			raise TransportFailure(f"serial session for {self.port} is not open")
		return self._serial

	# ------------------------------------------------------------------
	# Metrics helpers
	# ------------------------------------------------------------------
	def _metrics_extra(self) -> Dict[str, Any]:
		extra: Dict[str, Any] = {"port": self.port}
		if self.config.metadata:
			extra.update(self.config.metadata)
		return extra

	def _open_timer(self) -> ContextManager[None]:
		if not self.config.metrics:
			return contextlib.nullcontext()
		return self.config.metrics.timer("transport_open", **self._metrics_extra())

	def _metrics_log(
		self,
		event: str,
		*,
		status: Optional[str] = None,
		value: Optional[float] = None,
		message: Optional[str] = None,
	) -> None:
		if not self.config.metrics:
			return
		try:
			self.config.metrics.log(event, status=status, value=value, message=message, extra=self._metrics_extra())
		except Exception:  # pragma: no cover - logging must not break session
			logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
	"SerialSession",
	"SessionConfig",
	"SerialFactory",
]
