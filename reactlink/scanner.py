"""Serial port discovery for the button box."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from serial.tools import list_ports

from reactlink.config import MICROBIT_IDS, MICROBIT_NAME_HINTS
from reactlink.errors import DeviceNotFound

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PortInfo:
	"""Snapshot of one enumerated serial port."""

	device: str
	description: Optional[str] = None
	manufacturer: Optional[str] = None
	product: Optional[str] = None
	vid: Optional[int] = None
	pid: Optional[int] = None
	serial_number: Optional[str] = None
	hwid: Optional[str] = None

	@classmethod
	def from_list_ports(cls, port: Any) -> "PortInfo":
		return cls(
			device=port.device,
			description=getattr(port, "description", None) or None,
			manufacturer=getattr(port, "manufacturer", None) or None,
			product=getattr(port, "product", None) or None,
			vid=getattr(port, "vid", None),
			pid=getattr(port, "pid", None),
			serial_number=getattr(port, "serial_number", None) or None,
			hwid=getattr(port, "hwid", None) or None,
		)

	@property
	def usb_id(self) -> Optional[str]:
		if self.vid is None or self.pid is None:
			return None
		return f"{self.vid:04X}:{self.pid:04X}"

	def to_dict(self) -> Dict[str, Any]:
		return {
			"device": self.device,
			"description": self.description,
			"manufacturer": self.manufacturer,
			"product": self.product,
			"usb_id": self.usb_id,
			"serial_number": self.serial_number,
		}


@dataclass(slots=True)
class ScannerConfig:
	"""Identifiers that mark a port as the button box."""

	device_ids: Sequence[Tuple[int, int]] = MICROBIT_IDS
	name_hints: Sequence[str] = MICROBIT_NAME_HINTS
	include_all: bool = False
	_hints: Tuple[str, ...] = field(init=False, repr=False, default=())

	def __post_init__(self) -> None:
		self._hints = tuple(hint.lower() for hint in self.name_hints if hint)

	def matches(self, port: PortInfo) -> bool:
		if self.include_all:
			return True
		if port.vid is not None and port.pid is not None:
			if (port.vid, port.pid) in set(self.device_ids):
				return True
		text = " ".join(
			value for value in (port.manufacturer, port.product, port.description) if value
		).lower()
		return any(hint in text for hint in self._hints)


class Scanner:
	"""Enumerate ports and keep those matching :class:`ScannerConfig`."""

	def __init__(self, config: ScannerConfig | None = None) -> None:
		self.config = config or ScannerConfig()

	def scan(self) -> List[PortInfo]:
		ports = [PortInfo.from_list_ports(port) for port in list_ports.comports()]
		matched = [port for port in ports if self.config.matches(port)]
		logger.debug("Enumerated %d serial port(s), %d matched", len(ports), len(matched))
		return matched

	async def run(self) -> List[PortInfo]:
		return await asyncio.to_thread(self.scan)


async def discover(
	*,
	device_ids: Iterable[Tuple[int, int]] | None = None,
	name_hints: Iterable[str] | None = None,
	include_all: bool = False,
) -> List[PortInfo]:
	config = ScannerConfig(
		device_ids=tuple(device_ids) if device_ids is not None else MICROBIT_IDS,
		name_hints=tuple(name_hints) if name_hints is not None else MICROBIT_NAME_HINTS,
		include_all=include_all,
	)
	return await Scanner(config).run()


async def find_device(
	*,
	device_ids: Iterable[Tuple[int, int]] | None = None,
	name_hints: Iterable[str] | None = None,
) -> PortInfo:
	"""Return the first matching port or raise :class:`DeviceNotFound`."""
	ports = await discover(device_ids=device_ids, name_hints=name_hints)
	if not ports:
		raise DeviceNotFound("no serial port matches the button box identifiers")
	logger.info("Selected %s (%s)", ports[0].device, ports[0].description or "unknown")
	return ports[0]


__all__ = [
	"PortInfo",
	"ScannerConfig",
	"Scanner",
	"discover",
	"find_device",
]
