"""Rate-limited, strictly ordered delivery of decoded device messages."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from time import monotonic
from typing import Any, Callable, Deque, Dict, Iterable, Optional

from reactlink.buttons import ButtonStateTracker
from reactlink.calibration import LatencyCalibrator
from reactlink.errors import ErrorKind
from reactlink.events import Channel, ErrorEvent, EventEmitter
from reactlink.protocol import (
    ButtonPress,
    ButtonRelease,
    CalibrateResponse,
    Debug,
    DeviceError,
    InboundMessage,
    Ready,
    Status,
)

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 100
DEFAULT_WINDOW = 1.0


@dataclass(slots=True)
class PerformanceMetrics:
    messages_received: int = 0
    messages_dropped: int = 0
    messages_processed: int = 0
    last_message_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
            "messages_processed": self.messages_processed,
            "last_message_time": self.last_message_time,
        }


class SlidingWindowLimiter:
    """Admit at most ``limit`` events in any trailing ``window`` seconds."""

    def __init__(self, limit: int = DEFAULT_RATE_LIMIT, window: float = DEFAULT_WINDOW) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window <= 0:
            raise ValueError("window must be positive")
        self.limit = limit
        self.window = window
        self._admitted: Deque[float] = deque()

    def allow(self, now: float) -> bool:
        horizon = now - self.window
        while self._admitted and self._admitted[0] <= horizon:
            self._admitted.popleft()
        if len(self._admitted) >= self.limit:
            return False
        self._admitted.append(now)
        return True

    def reset(self) -> None:
        self._admitted.clear()


class MessageDispatcher:
    """Queue decoded messages and hand them to their handlers one at a time."""

    def __init__(
        self,
        tracker: ButtonStateTracker,
        calibrator: LatencyCalibrator,
        emitter: EventEmitter,
        *,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._tracker = tracker
        self._calibrator = calibrator
        self._emitter = emitter
        self._limiter = SlidingWindowLimiter(rate_limit, window)
        self._clock = clock
        self._queue: "asyncio.Queue[InboundMessage]" = asyncio.Queue()
        self.metrics = PerformanceMetrics()
        self.last_status: Optional[Status] = None

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def submit(self, message: InboundMessage) -> bool:
        """Enqueue ``message`` unless the rate cap is reached."""
        now = self._clock()
        self.metrics.messages_received += 1
        self.metrics.last_message_time = now
        if not self._limiter.allow(now):
            self.metrics.messages_dropped += 1
            logger.debug("Rate limit reached; dropped %r", message)
            return False
        self._queue.put_nowait(message)
        return True

    def submit_many(self, messages: Iterable[InboundMessage]) -> int:
        return sum(1 for message in messages if self.submit(message))

    def drain_pending(self) -> int:
        """Synchronously handle everything currently queued."""
        handled = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            self._dispatch(message)
            handled += 1

    async def run(self) -> None:
        """Drain the queue forever; cancel the task to stop."""
        while True:
            message = await self._queue.get()
            self._dispatch(message)

    def clear(self) -> int:
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        self._limiter.reset()
        return dropped

    def _dispatch(self, message: InboundMessage) -> None:
        try:
            self._route(message)
        except Exception:
            logger.exception("Handler failed for %r", message)
        finally:
            self.metrics.messages_processed += 1

    def _route(self, message: InboundMessage) -> None:
        if isinstance(message, ButtonPress):
            self._calibrator.handle_press(message)
            self._tracker.handle_press(message)
        elif isinstance(message, ButtonRelease):
            self._tracker.handle_release(message)
        elif isinstance(message, CalibrateResponse):
            self._calibrator.handle_response(message)
        elif isinstance(message, Status):
            self.last_status = message
            logger.debug("Device status: battery=%s temp=%s uptime=%s", message.battery, message.temp_c, message.uptime)
        elif isinstance(message, DeviceError):
            logger.error("Device reported error: %s", message.text)
            self._emitter.emit(Channel.ERROR, ErrorEvent(type=ErrorKind.DEVICE.value, message=message.text))
        elif isinstance(message, Debug):
            logger.debug("Device: %s", message.text)
        elif isinstance(message, Ready):
            logger.info("Device ready")
        else:
            logger.debug("No handler for %r", message)


__all__ = [
    "DEFAULT_RATE_LIMIT",
    "MessageDispatcher",
    "PerformanceMetrics",
    "SlidingWindowLimiter",
]
