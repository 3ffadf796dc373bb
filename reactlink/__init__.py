"""Timestamped button input from a serial button box.

The package is organised around :class:`HardwareLink`, which owns the serial
connection and publishes calibrated :class:`ButtonEvent` records through a
typed :class:`EventEmitter`.
"""
from .buttons import ButtonEvent, ButtonKind, ButtonStateTracker
from .calibration import CalibrationResult, CalibrationSample, LatencyCalibrator
from .config import LinkConfig
from .dispatcher import MessageDispatcher, PerformanceMetrics
from .errors import (
    CalibrationTimeout,
    ConnectionFailed,
    DeviceNotFound,
    LinkError,
    NotConnected,
    ProtocolError,
    TransportFailure,
)
from .events import Channel, EventEmitter, Subscription
from .link import HardwareLink
from .protocol import Command, ProtocolCodec
from .reconnect import ConnectionManager, ConnectionState

__version__ = "0.1.0"

__all__ = [
    "ButtonEvent",
    "ButtonKind",
    "ButtonStateTracker",
    "CalibrationResult",
    "CalibrationSample",
    "CalibrationTimeout",
    "Channel",
    "Command",
    "ConnectionFailed",
    "ConnectionManager",
    "ConnectionState",
    "DeviceNotFound",
    "EventEmitter",
    "HardwareLink",
    "LatencyCalibrator",
    "LinkConfig",
    "LinkError",
    "MessageDispatcher",
    "NotConnected",
    "PerformanceMetrics",
    "ProtocolCodec",
    "ProtocolError",
    "Subscription",
    "TransportFailure",
]
