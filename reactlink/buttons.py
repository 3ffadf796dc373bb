"""Press/release bookkeeping and latency compensation for the four buttons."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from reactlink.events import Channel, EventEmitter
from reactlink.protocol import BUTTON_COUNT, ButtonPress, ButtonRelease, monotonic_ms

logger = logging.getLogger(__name__)

BUTTON_COLORS = ("green", "white", "red", "green")
BUTTON_POSITIONS = ("left", "middle-left", "middle-right", "right")


class ButtonKind(str, Enum):
    PRESS = "press"
    RELEASE = "release"


@dataclass(slots=True, frozen=True)
class ButtonEvent:
    """A single press or release, handed to subscribers and then forgotten."""

    button: int
    kind: ButtonKind
    raw_timestamp: float
    compensated_timestamp: float
    device_time: Optional[int]
    session_relative_time: float
    latency: float
    press_count: int
    hold_duration: Optional[float] = None
    device_duration: Optional[int] = None
    anomaly: bool = False

    @property
    def color(self) -> str:
        return BUTTON_COLORS[self.button]

    @property
    def position(self) -> str:
        return BUTTON_POSITIONS[self.button]

    @property
    def timestamp(self) -> float:
        return self.compensated_timestamp

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "button": self.button,
            "kind": self.kind.value,
            "color": self.color,
            "position": self.position,
            "timestamp": self.compensated_timestamp,
            "raw_timestamp": self.raw_timestamp,
            "compensated_timestamp": self.compensated_timestamp,
            "device_time": self.device_time,
            "session_relative_time": self.session_relative_time,
            "latency": self.latency,
            "press_count": self.press_count,
        }
        if self.kind is ButtonKind.RELEASE:
            payload["hold_duration"] = self.hold_duration
            payload["device_duration"] = self.device_duration
            payload["anomaly"] = self.anomaly
        return payload


class ButtonStateTracker:
    """Turns decoded button messages into :class:`ButtonEvent` publications."""

    def __init__(
        self,
        emitter: EventEmitter,
        *,
        latency: Callable[[], float] = lambda: 0.0,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._emitter = emitter
        self._latency = latency
        self._clock = clock
        self.session_start = clock()
        self.pressed: List[bool] = [False] * BUTTON_COUNT
        self.press_counts: List[int] = [0] * BUTTON_COUNT
        self.last_press_time: List[Optional[float]] = [None] * BUTTON_COUNT
        self.last_release_time: List[Optional[float]] = [None] * BUTTON_COUNT
        self.anomalies = 0

    def reset(self, *, restart_session: bool = False) -> None:
        self.pressed = [False] * BUTTON_COUNT
        self.last_press_time = [None] * BUTTON_COUNT
        self.last_release_time = [None] * BUTTON_COUNT
        if restart_session:
            self.press_counts = [0] * BUTTON_COUNT
            self.anomalies = 0
            self.session_start = self._clock()

    def handle_press(self, message: ButtonPress) -> ButtonEvent:
        index = message.button
        raw = message.received_at or self._clock()
        self.pressed[index] = True
        self.press_counts[index] += 1
        self.last_press_time[index] = raw

        latency = self._current_latency()
        event = ButtonEvent(
            button=index,
            kind=ButtonKind.PRESS,
            raw_timestamp=raw,
            compensated_timestamp=raw - latency,
            device_time=message.device_time,
            session_relative_time=raw - self.session_start,
            latency=latency,
            press_count=self.press_counts[index],
        )
        logger.debug("Button %d (%s) pressed", index, event.color)
        self._emitter.emit(Channel.BUTTON_PRESS, event)
        return event

    def handle_release(self, message: ButtonRelease) -> ButtonEvent:
        index = message.button
        raw = message.received_at or self._clock()
        press_time = self.last_press_time[index]
        matched = self.pressed[index] and press_time is not None

        hold: Optional[float] = None
        if matched:
            hold = raw - press_time  # type: ignore[operator]
        else:
            self.anomalies += 1
            logger.warning("Release of button %d without a matching press", index)

        self.pressed[index] = False
        self.last_release_time[index] = raw

        latency = self._current_latency()
        event = ButtonEvent(
            button=index,
            kind=ButtonKind.RELEASE,
            raw_timestamp=raw,
            compensated_timestamp=raw - latency,
            device_time=message.device_time,
            session_relative_time=raw - self.session_start,
            latency=latency,
            press_count=self.press_counts[index],
            hold_duration=hold,
            device_duration=message.duration,
            anomaly=not matched,
        )
        self._emitter.emit(Channel.BUTTON_RELEASE, event)
        return event

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pressed": list(self.pressed),
            "press_counts": list(self.press_counts),
            "anomalies": self.anomalies,
        }

    def _current_latency(self) -> float:
        try:
            latency = float(self._latency())
        except Exception:
            logger.debug("Latency provider failed; using no compensation", exc_info=True)
            return 0.0
        return max(0.0, latency)


__all__ = [
    "BUTTON_COLORS",
    "BUTTON_POSITIONS",
    "ButtonEvent",
    "ButtonKind",
    "ButtonStateTracker",
]
