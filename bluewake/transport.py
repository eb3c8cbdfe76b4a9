"""D-Bus transport to the radio daemon built on dbus-fast."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import DBusError

from bluewake.config import RadioConfig
from bluewake.errors import TransportError
from bluewake.models.device import normalize_address

logger = logging.getLogger(__name__)

PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
MANAGER_PATH = "/"
MANAGER_INTERFACE = "com.kobo.bluetooth.BluedroidManager1"


@dataclass(slots=True)
class ManagedObject:
	"""One entry of ``GetManagedObjects`` with every variant unwrapped."""

	path: str
	interfaces: Dict[str, Dict[str, Any]] = field(default_factory=dict)

	def properties(self, interface: str) -> Optional[Dict[str, Any]]:
		return self.interfaces.get(interface)


class RadioTransport(Protocol):
	"""What the core needs from the radio daemon.

	Every method raises :class:`~bluewake.errors.TransportError` when the call
	could not be completed.
	"""

	async def get_bool_property(self, path: str, interface: str, name: str) -> bool: ...

	async def set_bool_property(self, path: str, interface: str, name: str, value: bool) -> None: ...

	async def invoke_method(self, path: str, interface: str, method: str) -> None: ...

	async def enumerate_managed_objects(self) -> List[ManagedObject]: ...


def device_path(adapter_path: str, address: str) -> str:
	return f"{adapter_path}/dev_{normalize_address(address).replace(':', '_')}"


def address_from_path(path: str) -> Optional[str]:
	leaf = path.rsplit("/", 1)[-1]
	if not leaf.startswith("dev_"):
		return None
	parts = leaf[4:].split("_")
	if len(parts) != 6 or not all(len(part) == 2 for part in parts):
		return None
	return ":".join(parts).upper()


def unwrap(value: Any) -> Any:
	"""Strip dbus-fast ``Variant`` wrappers, recursing into containers."""
	if isinstance(value, Variant):
		return unwrap(value.value)
	if isinstance(value, dict):
		return {key: unwrap(item) for key, item in value.items()}
	if isinstance(value, list):
		return [unwrap(item) for item in value]
	return value


def decode_managed_objects(body: Any) -> List[ManagedObject]:
	if not isinstance(body, dict):
		raise TransportError(f"unexpected GetManagedObjects payload: {type(body).__name__}")
	objects: List[ManagedObject] = []
	for path, interfaces in body.items():
		if not isinstance(interfaces, dict):
			continue
		objects.append(
			ManagedObject(
				path=str(path),
				interfaces={str(name): unwrap(props) or {} for name, props in interfaces.items()},
			)
		)
	return objects


class DBusTransport:
	"""Radio transport speaking raw messages to one D-Bus destination.

	The bus connection is opened on first use and re-opened if the daemon or
	the bus goes away between calls.
	"""

	def __init__(self, config: RadioConfig | None = None, *, bus_type: BusType = BusType.SYSTEM) -> None:
		self.config = config or RadioConfig()
		self._bus_type = bus_type
		self._bus: Optional[MessageBus] = None
		self._lock = asyncio.Lock()

	# ------------------------------------------------------------------
	# Connection lifecycle
	# ------------------------------------------------------------------
	async def _require_bus(self) -> MessageBus:
		async with self._lock:
			if self._bus is not None and self._bus.connected:
				return self._bus
			try:
				self._bus = await asyncio.wait_for(
					MessageBus(bus_type=self._bus_type).connect(),
					timeout=self.config.call_timeout,
				)
			except (OSError, asyncio.TimeoutError, DBusError) as exc:
				self._bus = None
				raise TransportError(f"cannot reach the {self._bus_type.name.lower()} bus: {exc}") from exc
			logger.debug("Connected to D-Bus for %s", self.config.destination)
			return self._bus

	async def close(self) -> None:
		async with self._lock:
			if self._bus is None:
				return
			try:
				self._bus.disconnect()
			except Exception as exc:  # pragma: no cover - bus teardown is best effort
				logger.debug("Ignoring error while closing D-Bus connection: %s", exc)
			finally:
				self._bus = None

	async def __aenter__(self) -> "DBusTransport":
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
		await self.close()

	async def _call(self, message: Message) -> Message:
		bus = await self._require_bus()
		try:
			reply = await asyncio.wait_for(bus.call(message), timeout=self.config.call_timeout)
		except asyncio.TimeoutError as exc:
			raise TransportError(f"{message.interface}.{message.member} timed out") from exc
		except (OSError, EOFError, DBusError) as exc:
			raise TransportError(f"{message.interface}.{message.member} failed: {exc}") from exc
		if reply is None:
			raise TransportError(f"{message.interface}.{message.member} returned no reply")
		if reply.message_type == MessageType.ERROR:
			detail = reply.body[0] if reply.body else ""
			raise TransportError(
				f"{message.interface}.{message.member} on {message.path}: {reply.error_name} {detail}".rstrip(),
				error_name=reply.error_name,
			)
		return reply

	# ------------------------------------------------------------------
	# RadioTransport
	# ------------------------------------------------------------------
	async def get_bool_property(self, path: str, interface: str, name: str) -> bool:
		reply = await self._call(
			Message(
				destination=self.config.destination,
				path=path,
				interface=PROPERTIES_INTERFACE,
				member="Get",
				signature="ss",
				body=[interface, name],
			)
		)
		value = unwrap(reply.body[0]) if reply.body else None
		if not isinstance(value, bool):
			raise TransportError(f"{interface}.{name} is not a boolean: {value!r}")
		return value

	async def set_bool_property(self, path: str, interface: str, name: str, value: bool) -> None:
		await self._call(
			Message(
				destination=self.config.destination,
				path=path,
				interface=PROPERTIES_INTERFACE,
				member="Set",
				signature="ssv",
				body=[interface, name, Variant("b", bool(value))],
			)
		)

	async def invoke_method(self, path: str, interface: str, method: str) -> None:
		await self._call(
			Message(
				destination=self.config.destination,
				path=path,
				interface=interface,
				member=method,
			)
		)

	async def enumerate_managed_objects(self) -> List[ManagedObject]:
		reply = await self._call(
			Message(
				destination=self.config.destination,
				path="/",
				interface=OBJECT_MANAGER_INTERFACE,
				member="GetManagedObjects",
			)
		)
		return decode_managed_objects(reply.body[0] if reply.body else None)


__all__ = [
	"ADAPTER_INTERFACE",
	"DBusTransport",
	"DEVICE_INTERFACE",
	"MANAGER_INTERFACE",
	"MANAGER_PATH",
	"ManagedObject",
	"RadioTransport",
	"address_from_path",
	"decode_managed_objects",
	"device_path",
	"unwrap",
]
