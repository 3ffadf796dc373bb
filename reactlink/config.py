"""Runtime configuration for :class:`reactlink.link.HardwareLink`."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Tuple

from reactlink.protocol import BAUD_RATE

MICROBIT_IDS: Tuple[Tuple[int, int], ...] = ((0x0D28, 0x0204),)
MICROBIT_NAME_HINTS: Tuple[str, ...] = ("mbed", "microbit", "micro:bit")

ENV_PREFIX = "REACTLINK_"


@dataclass(slots=True)
class LinkConfig:
    """Tunables for discovery, reconnection, rate limiting and calibration.

    Delays and timeouts are in seconds.
    """

    port: Optional[str] = None
    baudrate: int = BAUD_RATE
    device_ids: Tuple[Tuple[int, int], ...] = MICROBIT_IDS
    name_hints: Tuple[str, ...] = MICROBIT_NAME_HINTS
    read_timeout: float = 0.05
    write_timeout: float = 1.0
    rate_limit: int = 100
    rate_window: float = 1.0
    reconnect_base_delay: float = 2.0
    max_reconnect_attempts: int = 5
    stable_after: float = 5.0
    settle_delay: float = 1.0
    flush_delay: float = 0.1
    calibrate_on_connect: bool = True
    calibration_trials: int = 20
    ping_timeout: float = 0.5
    button_timeout: float = 10.0
    fallback_latency: float = 5.0
    metrics_log: Optional[Path] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.baudrate <= 0:
            raise ValueError("baudrate must be positive")
        if self.rate_limit <= 0:
            raise ValueError("rate_limit must be positive")
        if self.rate_window <= 0:
            raise ValueError("rate_window must be positive")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be non-negative")
        if self.stable_after < 0:
            raise ValueError("stable_after must be non-negative")
        if self.reconnect_base_delay < 0:
            raise ValueError("reconnect_base_delay must be non-negative")
        if self.calibration_trials < 0:
            raise ValueError("calibration_trials must be non-negative")
        if self.ping_timeout <= 0 or self.button_timeout <= 0:
            raise ValueError("calibration timeouts must be positive")
        if self.metrics_log is not None and not isinstance(self.metrics_log, Path):
            self.metrics_log = Path(self.metrics_log)

    def with_overrides(self, **changes: Any) -> "LinkConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "LinkConfig":
        """Build a config from ``REACTLINK_*`` variables, then apply ``overrides``."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        def _read(name: str, attr: str, convert: Callable[[str], Any]) -> None:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return
            try:
                values[attr] = convert(raw)
            except ValueError as exc:
                raise ValueError(f"invalid {ENV_PREFIX}{name}={raw!r}: {exc}") from exc

        _read("PORT", "port", str)
        _read("BAUDRATE", "baudrate", int)
        _read("RATE_LIMIT", "rate_limit", int)
        _read("MAX_RECONNECTS", "max_reconnect_attempts", int)
        _read("RECONNECT_BASE", "reconnect_base_delay", float)
        _read("STABLE_AFTER", "stable_after", float)
        _read("SETTLE_DELAY", "settle_delay", float)
        _read("CALIBRATION_TRIALS", "calibration_trials", int)
        _read("CALIBRATE", "calibrate_on_connect", _parse_bool)
        _read("METRICS_LOG", "metrics_log", Path)
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError("expected a boolean")


__all__ = ["LinkConfig", "MICROBIT_IDS", "MICROBIT_NAME_HINTS"]
