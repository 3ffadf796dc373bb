"""reactlink command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from reactlink.config import LinkConfig
from reactlink.events import Channel
from reactlink.link import HardwareLink
from reactlink.scanner import discover

PORT_COLUMNS = ("device", "description", "usb_id", "manufacturer")


def _event_line(channel: Channel, payload: Any) -> Dict[str, Any]:
	data = payload.to_dict() if hasattr(payload, "to_dict") else {"value": str(payload)}
	return {"event": channel.value, **data}


async def _cmd_ports(args: argparse.Namespace) -> int:
	ports = await discover(include_all=args.all)
	data = [port.to_dict() for port in ports]
	if args.json:
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="Serial Ports", show_lines=False)
	for column in PORT_COLUMNS:
		table.add_column(column.upper())
	for entry in data:
		table.add_row(*(str(entry.get(column) or "") for column in PORT_COLUMNS))
	Console().print(table)
	return 0 if data else 1


async def _cmd_monitor(args: argparse.Namespace) -> int:
	config = LinkConfig.from_env(
		port=args.port,
		metrics_log=Path(args.log) if args.log else None,
		calibrate_on_connect=False if args.no_calibrate else None,
		calibration_trials=args.trials,
	)
	link = HardwareLink(config)
	stop_event = asyncio.Event()

	def _print(channel: Channel, payload: Any) -> None:
		sys.stdout.write(json.dumps(_event_line(channel, payload), default=str) + "\n")
		sys.stdout.flush()

	link.emitter.subscribe_all(_print)

	def _signal_handler(*_: Any) -> None:
		stop_event.set()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	try:
		await link.start()
		with contextlib.suppress(asyncio.TimeoutError):
			await asyncio.wait_for(stop_event.wait(), timeout=args.runtime)
	finally:
		await link.stop()
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	from reactlink.api import create_app

	app = create_app(HardwareLink(LinkConfig.from_env(port=args.device)))
	server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, log_level=args.log_level.lower()))
	await server.serve()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Serial button box link")
	parser.add_argument("--log-level", default="INFO", help="Python logging level")
	sub = parser.add_subparsers(dest="command", required=True)

	ports = sub.add_parser("ports", help="List serial ports matching the button box")
	ports.add_argument("--all", action="store_true", help="List every serial port")
	ports.add_argument("--json", action="store_true", help="Output JSON")
	ports.set_defaults(handler=_cmd_ports)

	monitor = sub.add_parser("monitor", help="Connect and print button events as JSON lines")
	monitor.add_argument("--port", help="Serial port (default: auto-detect)")
	monitor.add_argument("--log", help="Path to a CSV trace of link activity")
	monitor.add_argument("--runtime", type=float, help="Stop after this many seconds")
	monitor.add_argument("--trials", type=int, help="Calibration round trips")
	monitor.add_argument("--no-calibrate", action="store_true", help="Skip calibration on connect")
	monitor.set_defaults(handler=_cmd_monitor)

	serve = sub.add_parser("serve", help="Run the HTTP/WebSocket API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.add_argument("--device", help="Serial port (default: auto-detect)")
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=getattr(logging, str(args.log_level).upper(), logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(main())
