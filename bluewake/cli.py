"""bluewake command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from bluewake.config import RadioConfig
from bluewake.coordinator import PowerEventCoordinator, build_coordinator
from bluewake.models import Device, EnableResult, ReconnectOutcome
from bluewake.settings import AUTO_RESTORE_WIFI, AUTO_RESUME_BT, STARTUP_RECONNECT
from bluewake.ui import BufferedSink, ConsoleSink, UiSink

SETTING_KEYS = {
	"auto-resume": AUTO_RESUME_BT,
	"startup-reconnect": STARTUP_RECONNECT,
	"auto-restore-wifi": AUTO_RESTORE_WIFI,
}

console = Console()


def _config_from_args(args: argparse.Namespace) -> RadioConfig:
	return RadioConfig.from_env().with_overrides(
		settings_path=Path(args.settings) if args.settings else None,
		journal_path=Path(args.journal) if args.journal else None,
		destination=args.destination,
	)


@contextlib.asynccontextmanager
async def _session(args: argparse.Namespace, sink: Optional[UiSink] = None) -> AsyncIterator[PowerEventCoordinator]:
	coordinator = build_coordinator(_config_from_args(args), sink=sink or ConsoleSink(console))
	await coordinator.adapter.refresh()
	try:
		yield coordinator
	finally:
		await coordinator.teardown()


def _devices_table(title: str, devices: List[Device]) -> Table:
	table = Table(title=title, show_lines=False)
	for column in ("address", "name", "paired", "connected"):
		table.add_column(column.upper())
	for device in devices:
		table.add_row(
			device.address,
			device.name,
			"yes" if device.paired else "",
			"yes" if device.connected else "",
		)
	return table


def _print_devices(title: str, devices: List[Device], as_json: bool) -> None:
	if as_json:
		json.dump([device.to_dict() for device in devices], sys.stdout, indent=2)
		sys.stdout.write("\n")
		return
	console.print(_devices_table(title, devices))


async def _cmd_status(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		status = await coordinator.status()
	if args.json:
		json.dump(status, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="bluewake status", show_header=False)
	table.add_column("key")
	table.add_column("value")
	last = status["last_device"]
	rows: Dict[str, Any] = {
		"Bluetooth": "ON" if status["enabled"] else "OFF",
		"State": status["state"],
		"Standby prevented": "yes" if status["standby_prevented"] else "no",
		"Reconnect strategy": status["reconnect_strategy"],
		"Last device": f"{last['name'] or '-'} ({last['address'] or '-'})",
	}
	for key, value in status["preferences"].items():
		if isinstance(value, bool):
			rows[key] = "on" if value else "off"
	for key, value in rows.items():
		table.add_row(key, str(value))
	console.print(table)
	return 0


async def _cmd_on(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		result = await coordinator.enable().wait()
	return 0 if result is EnableResult.ENABLED else 1


async def _cmd_off(args: argparse.Namespace) -> int:
	sink = ConsoleSink(console, assume_yes=args.yes)
	async with _session(args, sink) as coordinator:
		if not await coordinator.adapter.is_enabled():
			console.print("Bluetooth is already off.")
			return 0
		accepted = sink.confirm("Disable Bluetooth?", "Disable", lambda: None)
		if not accepted:
			return 1
		await coordinator.disable()
	return 0


async def _cmd_force_off(args: argparse.Namespace) -> int:
	sink = ConsoleSink(console, assume_yes=args.yes)
	async with _session(args, sink) as coordinator:
		if not sink.confirm("Force-disable Bluetooth immediately?", "Force OFF", lambda: None):
			return 1
		await coordinator.force_off()
	return 0


async def _cmd_devices(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		directory = coordinator.directory
		devices = await (directory.paired_devices() if args.paired else directory.list_devices())
	_print_devices("Paired devices" if args.paired else "Known devices", devices, args.json)
	return 0


async def _cmd_scan(args: argparse.Namespace) -> int:
	async with _session(args, BufferedSink()) as coordinator:
		devices = await coordinator.scan(args.duration)
	if not devices and not args.json:
		console.print("No Bluetooth devices found nearby.")
		return 0
	_print_devices("Scan results", devices, args.json)
	return 0


async def _cmd_connect(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		ok = await coordinator.connect_device(args.address)
	return 0 if ok else 1


async def _cmd_disconnect(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		ok = await coordinator.disconnect_device(args.address)
	return 0 if ok else 1


async def _cmd_strategies(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		entries = coordinator.engine.describe()
	if args.json:
		json.dump(entries, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="Reconnect strategies")
	for column in ("", "id", "label", "delay", "steps"):
		table.add_column(column.upper())
	for entry in entries:
		delay = "never" if entry["delay"] < 0 else f"{entry['delay']:g}s"
		table.add_row("*" if entry["current"] else "", entry["id"], entry["label"], delay, str(len(entry["steps"])))
	console.print(table)
	return 0


async def _cmd_strategy(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		strategy = coordinator.engine.select_strategy(args.id)
	console.print(f"Reconnect strategy set to: {strategy.label}")
	return 0


async def _cmd_reconnect(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		strategy = None
		if args.strategy:
			strategy = next((item for item in coordinator.engine.catalogue if item.id == args.strategy), None)
			if strategy is None:
				raise ValueError(f"unknown reconnect strategy {args.strategy!r}")
		outcome = await coordinator.engine.reconnect_now(strategy)
	return 0 if outcome is ReconnectOutcome.CONNECTED else 1


async def _cmd_forget(args: argparse.Namespace) -> int:
	sink = ConsoleSink(console, assume_yes=args.yes)
	async with _session(args, sink) as coordinator:
		last = coordinator.preferences.last_connected_name or coordinator.preferences.last_connected_address
		if last is None:
			console.print("Last device: (none)")
			return 0
		sink.confirm(f"Forget last connected device ({last})?", "Forget", coordinator.forget_device)
	return 0


async def _cmd_set(args: argparse.Namespace) -> int:
	async with _session(args) as coordinator:
		setattr(coordinator.preferences, SETTING_KEYS[args.key], args.value == "on")
	console.print(f"{args.key}: {args.value}")
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	from bluewake.api import create_app
	from bluewake.guards import StandbyGuard
	from bluewake.host import LogindHost, LogindIdleInhibitor, connect_host_bus

	sink = BufferedSink()
	config = _config_from_args(args)
	lifecycle = None
	if args.no_logind:
		coordinator = build_coordinator(config, sink=sink)
	else:
		idle = LogindIdleInhibitor()
		coordinator = build_coordinator(
			config,
			sink=sink,
			standby=StandbyGuard(idle.prevent_standby, idle.allow_standby),
		)

		@contextlib.asynccontextmanager
		async def lifecycle() -> AsyncIterator[None]:
			bus = await connect_host_bus()
			idle.attach(bus)
			host = LogindHost(coordinator, bus)
			await host.start()
			try:
				yield
			finally:
				await host.stop()
				idle.allow_standby()
				bus.disconnect()

	app = create_app(coordinator, sink=sink, lifecycle=lifecycle)
	server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, log_level="info"))
	await server.serve()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="bluewake", description="Bluetooth power and reconnect manager")
	parser.add_argument("--settings", help="Path to the settings JSON file")
	parser.add_argument("--journal", help="Path to the event journal CSV")
	parser.add_argument("--destination", help="D-Bus name of the radio daemon")
	parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
	sub = parser.add_subparsers(dest="command", required=True)

	status = sub.add_parser("status", help="Show adapter state and preferences")
	status.add_argument("--json", action="store_true", help="Output JSON")
	status.set_defaults(handler=_cmd_status)

	on = sub.add_parser("on", help="Enable Bluetooth")
	on.set_defaults(handler=_cmd_on)

	off = sub.add_parser("off", help="Disable Bluetooth")
	off.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
	off.set_defaults(handler=_cmd_off)

	force_off = sub.add_parser("force-off", help="Emergency power-off without state checks")
	force_off.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
	force_off.set_defaults(handler=_cmd_force_off)

	devices = sub.add_parser("devices", help="List devices known to the radio daemon")
	devices.add_argument("--paired", action="store_true", help="Only paired devices")
	devices.add_argument("--json", action="store_true", help="Output JSON")
	devices.set_defaults(handler=_cmd_devices)

	scan = sub.add_parser("scan", help="Discover nearby devices")
	scan.add_argument("--duration", type=float, default=10.0, help="Discovery time in seconds")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	scan.set_defaults(handler=_cmd_scan)

	connect = sub.add_parser("connect", help="Connect to a device and remember it")
	connect.add_argument("address", help="Device MAC address")
	connect.set_defaults(handler=_cmd_connect)

	disconnect = sub.add_parser("disconnect", help="Disconnect a device")
	disconnect.add_argument("address", help="Device MAC address")
	disconnect.set_defaults(handler=_cmd_disconnect)

	strategies = sub.add_parser("strategies", help="List reconnect strategies")
	strategies.add_argument("--json", action="store_true", help="Output JSON")
	strategies.set_defaults(handler=_cmd_strategies)

	strategy = sub.add_parser("strategy", help="Select the reconnect strategy used after wake")
	strategy.add_argument("id", help="Strategy id")
	strategy.set_defaults(handler=_cmd_strategy)

	reconnect = sub.add_parser("reconnect", help="Reconnect to the last device now")
	reconnect.add_argument("--strategy", help="Strategy id to run instead of the selected one")
	reconnect.set_defaults(handler=_cmd_reconnect)

	forget = sub.add_parser("forget", help="Forget the last connected device")
	forget.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
	forget.set_defaults(handler=_cmd_forget)

	set_cmd = sub.add_parser("set", help="Toggle a preference")
	set_cmd.add_argument("key", choices=sorted(SETTING_KEYS))
	set_cmd.add_argument("value", choices=("on", "off"))
	set_cmd.set_defaults(handler=_cmd_set)

	serve = sub.add_parser("serve", help="Run the HTTP API and react to system sleep")
	serve.add_argument("--host", default="127.0.0.1", help="Bind address")
	serve.add_argument("--port", type=int, default=8000, help="Bind port")
	serve.add_argument("--no-logind", action="store_true", help="Do not listen for logind sleep signals")
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.WARNING,
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
