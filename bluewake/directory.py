"""Device listing, discovery and connect/disconnect against the radio daemon."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from bluewake.errors import TransportError
from bluewake.models import Device
from bluewake.models.device import normalize_address
from bluewake.settings import Preferences
from bluewake.transport import (
	ADAPTER_INTERFACE,
	DEVICE_INTERFACE,
	ManagedObject,
	RadioTransport,
	address_from_path,
	device_path,
)

logger = logging.getLogger(__name__)

DEFAULT_SCAN_DURATION = 10.0


def device_from_object(obj: ManagedObject, adapter_path: str) -> Optional[Device]:
	"""Build a :class:`Device` from a managed object, or ``None`` if it is not one."""
	if not obj.path.startswith(adapter_path + "/"):
		return None
	if DEVICE_INTERFACE not in obj.interfaces:
		return None
	props: Dict[str, Any] = obj.properties(DEVICE_INTERFACE) or {}

	address = props.get("Address") or address_from_path(obj.path)
	if not address:
		return None
	address = normalize_address(str(address))
	name = props.get("Name") or props.get("Alias") or address
	return Device(
		address=address,
		name=str(name),
		paired=bool(props.get("Paired", False)),
		connected=bool(props.get("Connected", False)),
	)


class DeviceDirectory:
	"""Fresh device records on every query, plus the last scan for display."""

	def __init__(
		self,
		transport: RadioTransport,
		preferences: Preferences,
		*,
		adapter_path: str,
	) -> None:
		self.transport = transport
		self.preferences = preferences
		self.adapter_path = adapter_path
		self.last_scan: List[Device] = []

	async def list_devices(self) -> List[Device]:
		try:
			objects = await self.transport.enumerate_managed_objects()
		except TransportError as exc:
			logger.warning("Could not enumerate devices: %s", exc)
			return []
		devices = [
			device
			for device in (device_from_object(obj, self.adapter_path) for obj in objects)
			if device is not None
		]
		devices.sort(key=lambda item: (not item.connected, not item.paired, item.name.lower(), item.address))
		return devices

	async def paired_devices(self) -> List[Device]:
		return [device for device in await self.list_devices() if device.paired]

	async def find(self, address: str) -> Optional[Device]:
		target = normalize_address(address)
		for device in await self.list_devices():
			if device.address == target:
				return device
		return None

	async def is_connected(self, address: str) -> bool:
		device = await self.find(address)
		return bool(device and device.connected)

	async def scan(self, duration: float = DEFAULT_SCAN_DURATION) -> List[Device]:
		"""Run discovery for ``duration`` seconds and return what the daemon knows."""
		try:
			await self.transport.invoke_method(self.adapter_path, ADAPTER_INTERFACE, "StartDiscovery")
		except TransportError as exc:
			logger.warning("StartDiscovery failed: %s", exc)
		else:
			try:
				await asyncio.sleep(max(0.0, duration))
			finally:
				try:
					await self.transport.invoke_method(self.adapter_path, ADAPTER_INTERFACE, "StopDiscovery")
				except TransportError as exc:
					logger.debug("StopDiscovery failed: %s", exc)
		self.last_scan = await self.list_devices()
		logger.info("Scan finished with %d devices", len(self.last_scan))
		return list(self.last_scan)

	async def connect(self, device: Device) -> bool:
		try:
			await self.transport.invoke_method(
				device_path(self.adapter_path, device.address), DEVICE_INTERFACE, "Connect"
			)
		except TransportError as exc:
			logger.warning("Connect to %s failed: %s", device.address, exc)
			return False
		self.preferences.remember_device(device)
		logger.info("Connected to %s (%s)", device.name, device.address)
		return True

	async def disconnect(self, device: Device) -> bool:
		try:
			await self.transport.invoke_method(
				device_path(self.adapter_path, device.address), DEVICE_INTERFACE, "Disconnect"
			)
		except TransportError as exc:
			logger.warning("Disconnect from %s failed: %s", device.address, exc)
			return False
		logger.info("Disconnected from %s", device.address)
		return True


__all__ = [
	"DEFAULT_SCAN_DURATION",
	"DeviceDirectory",
	"device_from_object",
]
