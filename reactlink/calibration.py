"""Latency calibration: ping/pong round trips and per-button response probes."""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import statistics
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from reactlink.errors import CalibrationTimeout, ErrorKind
from reactlink.events import Channel, ErrorEvent, EventEmitter
from reactlink.protocol import BUTTON_COUNT, ButtonPress, CalibrateResponse, Command, monotonic_ms

logger = logging.getLogger(__name__)

DEFAULT_LATENCY_MS = 5.0
DEFAULT_TRIALS = 20
PING_TIMEOUT = 0.5
BUTTON_TIMEOUT = 10.0
# Responses from firmware that does not echo the request id are paired by
# their echoed send time.
LEGACY_MATCH_EPSILON_MS = 1.0

SendCommand = Callable[..., Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class CalibrationSample:
    request_id: int
    send_time: float
    rtt: float
    estimated_latency: float

    @classmethod
    def measure(cls, request_id: int, send_time: float, received_at: float) -> "CalibrationSample":
        rtt = received_at - send_time
        return cls(request_id=request_id, send_time=send_time, rtt=rtt, estimated_latency=rtt / 2.0)


@dataclass(slots=True)
class CalibrationResult:
    """Outcome of one calibration run, updated in place while it runs."""

    mean_latency: float = DEFAULT_LATENCY_MS
    jitter: float = 0.0
    per_button_response_time: List[float] = field(default_factory=lambda: [-1.0] * BUTTON_COUNT)
    calibrated: bool = False
    trials: int = 0
    samples: List[CalibrationSample] = field(default_factory=list)
    completed_at: Optional[float] = None

    @property
    def latency(self) -> float:
        return self.mean_latency

    @property
    def successful_trials(self) -> int:
        return len(self.samples)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean_latency": self.mean_latency,
            "jitter": self.jitter,
            "per_button_response_time": list(self.per_button_response_time),
            "calibrated": self.calibrated,
            "trials": self.trials,
            "successful_trials": self.successful_trials,
        }


def aggregate_latencies(
    latencies: Sequence[float],
    fallback: float = DEFAULT_LATENCY_MS,
) -> Tuple[float, float]:
    """Return ``(mean, population stdev)``, or ``(fallback, 0.0)`` when empty."""
    if not latencies:
        return fallback, 0.0
    return statistics.fmean(latencies), statistics.pstdev(latencies)


@dataclass(slots=True)
class _Pending:
    future: asyncio.Future
    deadline: float
    payload: Any = None


class PendingRequests:
    """Outstanding waits keyed by correlation id, each with a deadline.

    Nothing here sleeps: :meth:`sweep` fails every expired entry with
    :class:`CalibrationTimeout` and is meant to be called periodically.
    """

    def __init__(self, clock: Callable[[], float] = monotonic_ms) -> None:
        self._clock = clock
        self._entries: Dict[Hashable, _Pending] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def add(self, key: Hashable, timeout: float, payload: Any = None) -> asyncio.Future:
        """Register ``key``; ``timeout`` is in seconds."""
        if key in self._entries:
            raise KeyError(f"request {key!r} is already pending")
        future = asyncio.get_running_loop().create_future()
        self._entries[key] = _Pending(future, self._clock() + timeout * 1000.0, payload)
        return future

    def resolve(self, key: Hashable, value: Any) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(value)
        return True

    def discard(self, key: Hashable) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None and not entry.future.done():
            entry.future.cancel()

    def items(self) -> List[Tuple[Hashable, Any]]:
        return [(key, entry.payload) for key, entry in self._entries.items()]

    def sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [key for key, entry in self._entries.items() if entry.deadline <= now]
        for key in expired:
            entry = self._entries.pop(key)
            if not entry.future.done():
                entry.future.set_exception(CalibrationTimeout(f"request {key!r} timed out"))
        return len(expired)

    def expire_all(self, reason: str = "abandoned") -> int:
        count = 0
        for key in list(self._entries):
            entry = self._entries.pop(key)
            if not entry.future.done():
                entry.future.set_exception(CalibrationTimeout(f"request {key!r} {reason}"))
                count += 1
        return count


class LatencyCalibrator:
    """Estimate transmission latency and per-button response times.

    ``send`` is the connection's single write entry point; it is called as
    ``send(command, *fields)``. Responses are fed in through
    :meth:`handle_response` and :meth:`handle_press` by the dispatcher.
    """

    def __init__(
        self,
        send: SendCommand,
        emitter: EventEmitter,
        *,
        trials: int = DEFAULT_TRIALS,
        ping_timeout: float = PING_TIMEOUT,
        button_timeout: float = BUTTON_TIMEOUT,
        trial_interval: float = 0.02,
        sweep_interval: float = 0.01,
        fallback_latency: float = DEFAULT_LATENCY_MS,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        if trials < 0:
            raise ValueError("trials must be non-negative")
        self._send = send
        self._emitter = emitter
        self.trials = trials
        self.ping_timeout = ping_timeout
        self.button_timeout = button_timeout
        self.trial_interval = max(0.0, trial_interval)
        self.sweep_interval = max(0.001, sweep_interval)
        self.fallback_latency = fallback_latency
        self._clock = clock
        self._pending = PendingRequests(clock)
        self._ids = itertools.count(1)
        self._result = CalibrationResult()
        self._completed: Optional[CalibrationResult] = None
        self._running = False

    @property
    def result(self) -> CalibrationResult:
        return self._result

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> PendingRequests:
        return self._pending

    def latency(self) -> float:
        """Latency to subtract from timestamps; 0 until a run has completed."""
        if self._completed is None:
            return 0.0
        return self._completed.mean_latency

    async def run(self) -> CalibrationResult:
        if self._running:
            raise RuntimeError("calibration is already running")
        self._running = True
        result = CalibrationResult(trials=self.trials)
        self._result = result
        sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("Starting calibration (%d trials)", self.trials)
        try:
            try:
                await self._send(Command.SYNC_CLOCK, int(self._clock()))
                await self._ping_phase(result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._report_failure("latency", exc)
            finally:
                self._apply_latency(result)

            try:
                await self._button_phase(result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._report_failure("button", exc)
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            self._pending.expire_all()
            self._running = False

        result.calibrated = True
        result.completed_at = self._clock()
        self._completed = result
        logger.info(
            "Calibration complete: latency=%.2fms jitter=%.2fms (%d/%d samples)",
            result.mean_latency,
            result.jitter,
            result.successful_trials,
            result.trials,
        )
        self._emitter.emit(Channel.CALIBRATION_COMPLETE, result)
        return result

    def abort(self) -> int:
        """Expire every outstanding wait immediately."""
        return self._pending.expire_all("abandoned")

    def handle_response(self, message: CalibrateResponse) -> bool:
        if message.request_id is not None:
            key: Optional[Hashable] = ("ping", message.request_id)
        else:
            key = self._match_by_send_time(message.orig_send_time)
        if key is None or not self._pending.resolve(key, message):
            logger.debug("Ignoring unmatched calibration response %r", message)
            return False
        return True

    def handle_press(self, message: ButtonPress) -> bool:
        return self._pending.resolve(("button", message.button), message)

    async def _ping_phase(self, result: CalibrationResult) -> None:
        for trial in range(self.trials):
            request_id = next(self._ids)
            key = ("ping", request_id)
            send_time = self._clock()
            future = self._pending.add(key, self.ping_timeout, payload=send_time)
            try:
                await self._send(Command.CALIBRATE_PING, send_time, request_id)
                response: CalibrateResponse = await future
            except CalibrationTimeout:
                logger.debug("Calibration ping %d timed out", request_id)
                continue
            finally:
                self._pending.discard(key)

            received = response.received_at or self._clock()
            result.samples.append(CalibrationSample.measure(request_id, send_time, received))
            if self.trial_interval and trial < self.trials - 1:
                await asyncio.sleep(self.trial_interval)

    async def _button_phase(self, result: CalibrationResult) -> None:
        for button in range(BUTTON_COUNT):
            key = ("button", button)
            started = self._clock()
            future = self._pending.add(key, self.button_timeout, payload=started)
            try:
                await self._send(Command.TEST_BUTTON, button)
                press: ButtonPress = await future
                result.per_button_response_time[button] = (press.received_at or self._clock()) - started
            except CalibrationTimeout:
                result.per_button_response_time[button] = -1.0
                logger.info("No response from button %d within %.1fs", button, self.button_timeout)
            finally:
                self._pending.discard(key)
            await self._send(Command.CLEAR)

    def _apply_latency(self, result: CalibrationResult) -> None:
        latencies = [sample.estimated_latency for sample in result.samples]
        result.mean_latency, result.jitter = aggregate_latencies(latencies, self.fallback_latency)
        if not latencies:
            logger.warning("No calibration round trips succeeded; using %.1fms", self.fallback_latency)

    def _match_by_send_time(self, orig_send_time: float) -> Optional[Hashable]:
        best: Optional[Hashable] = None
        best_delta = LEGACY_MATCH_EPSILON_MS
        for key, send_time in self._pending.items():
            if not (isinstance(key, tuple) and key[0] == "ping"):
                continue
            delta = abs(send_time - orig_send_time)
            if delta <= best_delta:
                best, best_delta = key, delta
        return best

    def _report_failure(self, phase: str, exc: BaseException) -> None:
        logger.warning("Calibration %s phase failed: %s", phase, exc)
        self._emitter.emit(
            Channel.ERROR,
            ErrorEvent(type=ErrorKind.CALIBRATION.value, message=f"{phase} calibration failed: {exc}"),
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self._pending.sweep()


__all__ = [
    "DEFAULT_LATENCY_MS",
    "CalibrationResult",
    "CalibrationSample",
    "LatencyCalibrator",
    "PendingRequests",
    "aggregate_latencies",
]
