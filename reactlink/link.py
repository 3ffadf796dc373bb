"""The hardware input link: one explicitly owned object wiring every component."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, Optional, Union

from reactlink.buttons import ButtonEvent, ButtonStateTracker
from reactlink.calibration import CalibrationResult, LatencyCalibrator
from reactlink.config import LinkConfig
from reactlink.dispatcher import MessageDispatcher
from reactlink.events import Channel, ErrorEvent, EventEmitter, Subscriber, Subscription
from reactlink.metrics import MetricsLogger
from reactlink.protocol import BUTTON_COUNT, Command, ProtocolCodec, monotonic_ms
from reactlink.reconnect import ConnectionManager, PortFinder, SessionFactory

logger = logging.getLogger(__name__)

DISPLAY_SIZE = 5
MAX_BRIGHTNESS = 9


def _check_button(button: int) -> int:
    if not isinstance(button, int) or not 0 <= button < BUTTON_COUNT:
        raise ValueError(f"button must be in 0..{BUTTON_COUNT - 1}, got {button!r}")
    return button


def _check_positive(**values: int) -> None:
    for name, value in values.items():
        if not isinstance(value, int) or value < 1:
            raise ValueError(f"{name} must be a positive integer, got {value!r}")


GAME_EVENTS = {
    "start": Command.GAME_START,
    "over": Command.GAME_OVER,
    "win": Command.GAME_WIN,
}


class HardwareLink:
    """Serial button box link for the test battery.

    Build one instance and hand it to whatever needs button input::

        link = HardwareLink(LinkConfig.from_env())
        link.subscribe(Channel.BUTTON_PRESS, on_press)
        await link.start()
    """

    def __init__(
        self,
        config: Optional[LinkConfig] = None,
        *,
        emitter: Optional[EventEmitter] = None,
        metrics: Optional[MetricsLogger] = None,
        session_factory: Optional[SessionFactory] = None,
        port_finder: Optional[PortFinder] = None,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.config = config or LinkConfig()
        self.emitter = emitter or EventEmitter()
        if metrics is None and self.config.metrics_log is not None:
            metrics = MetricsLogger(self.config.metrics_log, static_extra=dict(self.config.metadata))
        self.metrics = metrics

        self.codec = ProtocolCodec(clock=clock)
        self.manager = ConnectionManager(
            self.config,
            self.emitter,
            self._submit,
            codec=self.codec,
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            session_factory=session_factory,
            port_finder=port_finder,
            metrics=metrics,
        )
        self.calibrator = LatencyCalibrator(
            self.manager.send,
            self.emitter,
            trials=self.config.calibration_trials,
            ping_timeout=self.config.ping_timeout,
            button_timeout=self.config.button_timeout,
            fallback_latency=self.config.fallback_latency,
            clock=clock,
        )
        self.tracker = ButtonStateTracker(self.emitter, latency=self.calibrator.latency, clock=clock)
        self.dispatcher = MessageDispatcher(
            self.tracker,
            self.calibrator,
            self.emitter,
            rate_limit=self.config.rate_limit,
            window=self.config.rate_window,
        )

        self._drain_task: Optional[asyncio.Task] = None
        self._calibration_task: Optional[asyncio.Task] = None
        self._trace: list[Subscription] = []
        if self.metrics is not None:
            self._trace = self.emitter.subscribe_all(self._record)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self.manager.connected

    @property
    def running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def start(self) -> bool:
        if not self.running:
            self._drain_task = asyncio.create_task(self.dispatcher.run())
        return await self.manager.connect()

    async def stop(self) -> None:
        self._cancel_calibration()
        self.calibrator.abort()
        await self.manager.disconnect()
        task, self._drain_task = self._drain_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "HardwareLink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.stop()

    def subscribe(self, channel: Union[Channel, str], callback: Subscriber) -> Subscription:
        return self.emitter.subscribe(channel, callback)

    async def calibrate(self) -> CalibrationResult:
        """Run calibration now (waits for a scheduled run instead of starting a second one)."""
        if self._calibration_task is not None and not self._calibration_task.done():
            return await asyncio.shield(self._calibration_task)
        self._calibration_task = asyncio.create_task(self.calibrator.run())
        return await asyncio.shield(self._calibration_task)

    @property
    def calibration(self) -> CalibrationResult:
        return self.calibrator.result

    # ------------------------------------------------------------------
    # Device output
    # ------------------------------------------------------------------
    async def set_led(self, button: int, on: bool = True) -> None:
        await self.manager.send(Command.LED_ON if on else Command.LED_OFF, _check_button(button))

    async def set_all_leds(self, on: bool = True) -> None:
        await self.manager.send(Command.ALL_LED_ON if on else Command.ALL_LED_OFF)

    async def flash_led(self, button: int, times: int = 3, duration_ms: int = 300) -> None:
        _check_positive(times=times, duration_ms=duration_ms)
        await self.manager.send(Command.FLASH, _check_button(button), times, duration_ms)

    async def flash_all(self, times: int = 3, duration_ms: int = 300) -> None:
        _check_positive(times=times, duration_ms=duration_ms)
        await self.manager.send(Command.FLASH_ALL, times, duration_ms)

    # Light shows run on the device; each call only starts one.
    async def chase_leds(self, rounds: int = 3, speed_ms: int = 100) -> None:
        _check_positive(rounds=rounds, speed_ms=speed_ms)
        await self.manager.send(Command.CHASE, rounds, speed_ms)

    async def random_sequence(self, count: int = 5, on_ms: int = 300, off_ms: int = 200, sequences: int = 1) -> None:
        """Light ``count`` random buttons one after another, ``sequences`` times."""
        _check_positive(count=count, on_ms=on_ms, sequences=sequences)
        if not isinstance(off_ms, int) or off_ms < 0:
            raise ValueError(f"off_ms must be a non-negative integer, got {off_ms!r}")
        await self.manager.send(Command.RANDOM_SEQ, count, on_ms, off_ms, sequences)

    async def random_flash(self, sequences: int = 5, flash_ms: int = 200) -> None:
        _check_positive(sequences=sequences, flash_ms=flash_ms)
        await self.manager.send(Command.RANDOM_FLASH, sequences, flash_ms)

    async def random_game(self, rounds: int = 10, speed_ms: int = 500) -> None:
        _check_positive(rounds=rounds, speed_ms=speed_ms)
        await self.manager.send(Command.RANDOM_GAME, rounds, speed_ms)

    async def simon_pattern(self, length: int = 4, speed_ms: int = 600) -> None:
        _check_positive(length=length, speed_ms=speed_ms)
        await self.manager.send(Command.SIMON, length, speed_ms)

    async def cascade(self, waves: int = 3, speed_ms: int = 100) -> None:
        _check_positive(waves=waves, speed_ms=speed_ms)
        await self.manager.send(Command.CASCADE, waves, speed_ms)

    async def rhythm(self, beats: int = 8, tempo_bpm: int = 120) -> None:
        _check_positive(beats=beats, tempo_bpm=tempo_bpm)
        await self.manager.send(Command.RHYTHM, beats, tempo_bpm)

    async def game_event(self, name: str) -> None:
        """Play the device's ``start``, ``over`` or ``win`` animation."""
        try:
            command = GAME_EVENTS[name.lower()]
        except (KeyError, AttributeError):
            raise ValueError(f"unknown game event {name!r}; expected one of {sorted(GAME_EVENTS)}") from None
        await self.manager.send(command)

    async def show_pattern(self, pattern_id: int) -> None:
        if pattern_id < 0:
            raise ValueError("pattern_id must be non-negative")
        await self.manager.send(Command.PATTERN, pattern_id)

    async def show_icon(self, name: str) -> None:
        if not name or not name.replace("_", "").isalnum():
            raise ValueError(f"invalid icon name {name!r}")
        await self.manager.send(Command.ICON, name.upper())

    async def clear_display(self) -> None:
        await self.manager.send(Command.CLEAR)

    async def set_pixel(self, x: int, y: int, brightness: int = MAX_BRIGHTNESS) -> None:
        if not (0 <= x < DISPLAY_SIZE and 0 <= y < DISPLAY_SIZE):
            raise ValueError(f"pixel ({x}, {y}) outside the {DISPLAY_SIZE}x{DISPLAY_SIZE} display")
        if not 0 <= brightness <= MAX_BRIGHTNESS:
            raise ValueError(f"brightness must be in 0..{MAX_BRIGHTNESS}")
        await self.manager.send(Command.PIXEL, x, y, brightness)

    async def sync_clock(self) -> None:
        await self.manager.send(Command.SYNC_CLOCK, int(monotonic_ms()))

    def status(self) -> Dict[str, Any]:
        last_status = self.dispatcher.last_status
        return {
            "connected": self.connected,
            **self.manager.status(),
            "buttons": self.tracker.snapshot(),
            "calibration": self.calibrator.result.to_dict(),
            "calibrating": self.calibrator.running,
            "metrics": self.dispatcher.metrics.to_dict(),
            "protocol_drops": self.codec.dropped,
            "device_status": last_status.to_dict() if last_status else None,
        }

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def _submit(self, messages: list) -> None:
        self.dispatcher.submit_many(messages)

    def _on_connected(self, port: str) -> None:
        self.tracker.reset()
        if not self.config.calibrate_on_connect:
            return
        self._cancel_calibration()
        self._calibration_task = asyncio.create_task(self._calibrate_after(self.config.settle_delay))

    def _on_disconnected(self, reason: str) -> None:
        self.calibrator.abort()
        self.tracker.reset()

    async def _calibrate_after(self, delay: float) -> CalibrationResult:
        await asyncio.sleep(delay)
        return await self.calibrator.run()

    def _cancel_calibration(self) -> None:
        task, self._calibration_task = self._calibration_task, None
        if task is not None and not task.done():
            task.cancel()

    def _record(self, channel: Channel, payload: Any) -> None:
        if self.metrics is None:
            return
        if isinstance(payload, ButtonEvent):
            self.metrics.log(
                channel.value,
                status="anomaly" if payload.anomaly else "ok",
                button=payload.button,
                value=payload.compensated_timestamp,
                extra={"hold_duration": payload.hold_duration, "latency": payload.latency},
            )
        elif isinstance(payload, CalibrationResult):
            self.metrics.log(
                channel.value,
                status="ok" if payload.successful_trials else "fallback",
                value=payload.mean_latency,
                extra=payload.to_dict(),
            )
        elif isinstance(payload, ErrorEvent):
            self.metrics.log(channel.value, status=payload.type, message=payload.message)
        else:
            self.metrics.log(channel.value, status="ok", extra=payload.to_dict())


__all__ = ["HardwareLink"]
