"""Exception hierarchy for the hardware input link."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Value of the ``type`` field carried by ``error`` events."""

    CONNECTION = "connection"
    TRANSPORT = "transport"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    PROTOCOL = "protocol"
    CALIBRATION = "calibration"
    DEVICE = "device"


class LinkError(Exception):
    """Base class for every error raised by reactlink."""

    kind: ErrorKind = ErrorKind.CONNECTION


class DeviceNotFound(LinkError):
    """No serial port matched the configured device identifiers."""


class ConnectionFailed(LinkError):
    """The serial port was found but could not be opened."""


class NotConnected(LinkError):
    """A write was attempted while the link is not connected."""


class TransportFailure(LinkError):
    """The open transport failed mid-session (read or write fault)."""

    kind = ErrorKind.TRANSPORT


class ProtocolError(LinkError, ValueError):
    """An inbound line could not be parsed."""

    kind = ErrorKind.PROTOCOL

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class CalibrationTimeout(LinkError, TimeoutError):
    """A calibration round trip or button probe expired."""

    kind = ErrorKind.CALIBRATION


__all__ = [
    "ErrorKind",
    "LinkError",
    "DeviceNotFound",
    "ConnectionFailed",
    "NotConnected",
    "TransportFailure",
    "ProtocolError",
    "CalibrationTimeout",
]
