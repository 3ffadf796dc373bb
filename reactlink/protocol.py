"""Line protocol spoken between the host and the button box firmware.

Frames are newline terminated ASCII with colon separated fields::

    BTN_PRESS:2:104512
    CALIBRATE_RESPONSE:1532.250:99871:7

:class:`ProtocolCodec` turns an arbitrary sequence of byte chunks into typed
inbound messages and encodes outbound commands.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Callable, List, Optional, Sequence, Union

from reactlink.errors import ProtocolError

logger = logging.getLogger(__name__)

BAUD_RATE = 115200
LINE_TERMINATOR = b"\n"
FIELD_SEPARATOR = ":"
MAX_LINE_BYTES = 4096
BUTTON_COUNT = 4


def monotonic_ms() -> float:
    """Host clock used for every link timestamp, in milliseconds."""
    return perf_counter() * 1000.0


class Inbound(str, Enum):
    BUTTON_PRESS = "BTN_PRESS"
    BUTTON_RELEASE = "BTN_RELEASE"
    CALIBRATE_RESPONSE = "CALIBRATE_RESPONSE"
    STATUS = "STATUS"
    ERROR = "ERROR"
    DEBUG = "DEBUG"
    READY = "READY"


class Command(str, Enum):
    """Commands understood by the device."""

    INIT = "INIT"
    CALIBRATE_PING = "CALIBRATE_PING"
    SYNC_CLOCK = "SYNC_CLOCK"
    TEST_BUTTON = "TEST_BUTTON"
    LED_ON = "LED_ON"
    LED_OFF = "LED_OFF"
    ALL_LED_ON = "ALL_LED_ON"
    ALL_LED_OFF = "ALL_LED_OFF"
    FLASH = "FLASH"
    FLASH_ALL = "FLASH_ALL"
    PATTERN = "PATTERN"
    ICON = "ICON"
    CLEAR = "CLEAR"
    PIXEL = "PIXEL"
    CHASE = "CHASE"
    RANDOM_SEQ = "RANDOM_SEQ"
    RANDOM_FLASH = "RANDOM_FLASH"
    RANDOM_GAME = "RANDOM_GAME"
    SIMON = "SIMON"
    CASCADE = "CASCADE"
    RHYTHM = "RHYTHM"
    GAME_START = "GAME_START"
    GAME_OVER = "GAME_OVER"
    GAME_WIN = "GAME_WIN"
    DISCONNECT = "DISCONNECT"


@dataclass(slots=True, frozen=True)
class ButtonPress:
    button: int
    device_time: Optional[int]
    received_at: float = 0.0


@dataclass(slots=True, frozen=True)
class ButtonRelease:
    button: int
    device_time: Optional[int]
    duration: int = 0
    received_at: float = 0.0


@dataclass(slots=True, frozen=True)
class CalibrateResponse:
    orig_send_time: float
    device_recv_time: float
    request_id: Optional[int] = None
    received_at: float = 0.0


@dataclass(slots=True, frozen=True)
class Status:
    battery: float
    temp_c: float
    uptime: float
    received_at: float = 0.0

    def to_dict(self) -> dict:
        return {"battery": self.battery, "temp_c": self.temp_c, "uptime": self.uptime}


@dataclass(slots=True, frozen=True)
class DeviceError:
    text: str
    received_at: float = 0.0


@dataclass(slots=True, frozen=True)
class Debug:
    text: str
    received_at: float = 0.0


@dataclass(slots=True, frozen=True)
class Ready:
    received_at: float = 0.0


@dataclass(slots=True, frozen=True)
class Unknown:
    raw: str
    received_at: float = 0.0


InboundMessage = Union[
    ButtonPress,
    ButtonRelease,
    CalibrateResponse,
    Status,
    DeviceError,
    Debug,
    Ready,
    Unknown,
]


def _require(parts: Sequence[str], count: int, line: str) -> None:
    if len(parts) < count:
        raise ProtocolError(f"{parts[0]} expects {count - 1} field(s), got {len(parts) - 1}", line)


def _number(raw: str, name: str, line: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ProtocolError(f"field {name!r} is not numeric: {raw!r}", line) from None


def _button(raw: str, line: str) -> int:
    try:
        index = int(raw)
    except ValueError:
        raise ProtocolError(f"button index is not an integer: {raw!r}", line) from None
    if not 0 <= index < BUTTON_COUNT:
        raise ProtocolError(f"button index {index} outside 0..{BUTTON_COUNT - 1}", line)
    return index


def _device_time(parts: Sequence[str], position: int, line: str) -> Optional[int]:
    if len(parts) <= position or not parts[position]:
        return None
    return int(_number(parts[position], "device_time", line))


def parse_line(line: str, received_at: float = 0.0) -> InboundMessage:
    """Parse one frame (terminator already stripped).

    Raises :class:`ProtocolError` for recognised commands with bad fields.
    Unrecognised commands come back as :class:`Unknown`.
    """
    parts = line.split(FIELD_SEPARATOR)
    command = parts[0].strip().upper()

    if command == Inbound.BUTTON_PRESS:
        _require(parts, 2, line)
        return ButtonPress(
            button=_button(parts[1], line),
            device_time=_device_time(parts, 2, line),
            received_at=received_at,
        )
    if command == Inbound.BUTTON_RELEASE:
        _require(parts, 2, line)
        duration = 0
        if len(parts) > 3 and parts[3]:
            duration = int(_number(parts[3], "duration", line))
        return ButtonRelease(
            button=_button(parts[1], line),
            device_time=_device_time(parts, 2, line),
            duration=duration,
            received_at=received_at,
        )
    if command == Inbound.CALIBRATE_RESPONSE:
        _require(parts, 3, line)
        request_id = None
        if len(parts) > 3 and parts[3]:
            request_id = int(_number(parts[3], "request_id", line))
        return CalibrateResponse(
            orig_send_time=_number(parts[1], "orig_send_time", line),
            device_recv_time=_number(parts[2], "device_recv_time", line),
            request_id=request_id,
            received_at=received_at,
        )
    if command == Inbound.STATUS:
        _require(parts, 4, line)
        return Status(
            battery=_number(parts[1], "battery", line),
            temp_c=_number(parts[2], "temp_c", line),
            uptime=_number(parts[3], "uptime", line),
            received_at=received_at,
        )
    if command == Inbound.ERROR:
        return DeviceError(text=FIELD_SEPARATOR.join(parts[1:]), received_at=received_at)
    if command == Inbound.DEBUG:
        return Debug(text=FIELD_SEPARATOR.join(parts[1:]), received_at=received_at)
    if command == Inbound.READY:
        return Ready(received_at=received_at)
    return Unknown(raw=line, received_at=received_at)


def _format_field(value: object) -> str:
    if isinstance(value, float):
        text = f"{value:.3f}"
    elif isinstance(value, Enum):
        text = str(value.value)
    else:
        text = str(value)
    if "\n" in text or "\r" in text or FIELD_SEPARATOR in text:
        raise ValueError(f"command field may not contain separators: {text!r}")
    return text


def encode_command(command: Union[Command, str], *fields: object) -> bytes:
    name = command.value if isinstance(command, Command) else str(command)
    parts = [name, *(_format_field(field) for field in fields)]
    return (FIELD_SEPARATOR.join(parts)).encode("ascii") + LINE_TERMINATOR


class ProtocolCodec:
    """Incremental frame decoder.

    Chunks may split a frame anywhere; the partial tail is kept until the
    terminator arrives. Lines that fail to parse, and unknown commands, are
    logged and counted in :attr:`dropped` rather than raised.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = monotonic_ms,
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self._clock = clock
        self._max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self.lines_decoded = 0
        self.dropped = 0

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, chunk: bytes) -> List[str]:
        """Append ``chunk`` and return every completed line."""
        self._buffer.extend(chunk)
        lines: List[str] = []
        while True:
            index = self._buffer.find(LINE_TERMINATOR)
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            text = raw.decode("ascii", errors="replace").strip("\r").strip()
            if text:
                lines.append(text)
        if len(self._buffer) > self._max_line_bytes:
            logger.warning("Discarding %d buffered bytes without a line terminator", len(self._buffer))
            self._buffer.clear()
            self.dropped += 1
        return lines

    def decode(self, chunk: bytes) -> List[InboundMessage]:
        received_at = self._clock()
        messages: List[InboundMessage] = []
        for line in self.feed(chunk):
            try:
                message = parse_line(line, received_at)
            except ProtocolError as exc:
                self.dropped += 1
                logger.warning("Dropping malformed line %r: %s", line, exc)
                continue
            if isinstance(message, Unknown):
                self.dropped += 1
                logger.info("Dropping unknown command %r", line)
                continue
            self.lines_decoded += 1
            messages.append(message)
        return messages

    encode = staticmethod(encode_command)


__all__ = [
    "BAUD_RATE",
    "BUTTON_COUNT",
    "LINE_TERMINATOR",
    "Command",
    "Inbound",
    "ButtonPress",
    "ButtonRelease",
    "CalibrateResponse",
    "Status",
    "DeviceError",
    "Debug",
    "Ready",
    "Unknown",
    "InboundMessage",
    "ProtocolCodec",
    "encode_command",
    "monotonic_ms",
    "parse_line",
]
