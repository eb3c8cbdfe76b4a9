"""Tests for transport helpers, the D-Bus error mapping and configuration."""
from __future__ import annotations

import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List

from dbus_fast import Message, MessageType, Variant

from bluewake.config import RadioConfig
from bluewake.errors import TransportError, safe_call
from bluewake.transport import (
    DEVICE_INTERFACE,
    DBusTransport,
    address_from_path,
    decode_managed_objects,
    device_path,
    unwrap,
)


class PathHelpersTest(unittest.TestCase):
    def test_device_path_round_trip(self) -> None:
        path = device_path("/org/bluez/hci0", "aa:bb:cc:dd:ee:ff")
        self.assertEqual(path, "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF")
        self.assertEqual(address_from_path(path), "AA:BB:CC:DD:EE:FF")

    def test_address_from_non_device_path(self) -> None:
        self.assertIsNone(address_from_path("/org/bluez/hci0"))
        self.assertIsNone(address_from_path("/org/bluez/hci0/dev_AA_BB"))


class DecodeTest(unittest.TestCase):
    def test_unwrap_nested_variants(self) -> None:
        value = {"Paired": Variant("b", True), "UUIDs": Variant("as", ["a", "b"])}
        self.assertEqual(unwrap(value), {"Paired": True, "UUIDs": ["a", "b"]})

    def test_decode_managed_objects(self) -> None:
        body = {
            "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF": {
                DEVICE_INTERFACE: {"Name": Variant("s", "Pen"), "Connected": Variant("b", False)},
            }
        }
        [obj] = decode_managed_objects(body)
        self.assertEqual(obj.properties(DEVICE_INTERFACE), {"Name": "Pen", "Connected": False})
        self.assertIsNone(obj.properties("org.bluez.Adapter1"))

    def test_decode_rejects_non_dict(self) -> None:
        with self.assertRaises(TransportError):
            decode_managed_objects(["nope"])


class _FakeBus:
    def __init__(self, reply: Any) -> None:
        self.reply = reply
        self.connected = True
        self.sent: List[Message] = []

    async def call(self, message: Message) -> Any:
        self.sent.append(message)
        return self.reply


class DBusTransportTest(unittest.IsolatedAsyncioTestCase):
    def _transport(self, reply: Any) -> tuple[DBusTransport, _FakeBus]:
        transport = DBusTransport(RadioConfig(destination="com.example.radio"))
        bus = _FakeBus(reply)
        transport._bus = bus  # type: ignore[assignment]
        return transport, bus

    async def test_get_bool_property_unwraps_variant(self) -> None:
        reply = SimpleNamespace(message_type=MessageType.METHOD_RETURN, body=[Variant("b", True)])
        transport, bus = self._transport(reply)
        self.assertTrue(await transport.get_bool_property("/org/bluez/hci0", "org.bluez.Adapter1", "Powered"))
        self.assertEqual(bus.sent[0].destination, "com.example.radio")
        self.assertEqual(bus.sent[0].body, ["org.bluez.Adapter1", "Powered"])

    async def test_error_reply_becomes_transport_error(self) -> None:
        reply = SimpleNamespace(
            message_type=MessageType.ERROR,
            error_name="org.bluez.Error.Failed",
            body=["Operation failed"],
        )
        transport, _ = self._transport(reply)
        with self.assertRaises(TransportError) as ctx:
            await transport.invoke_method("/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF", DEVICE_INTERFACE, "Connect")
        self.assertEqual(ctx.exception.error_name, "org.bluez.Error.Failed")

    async def test_safe_call_absorbs_transport_errors_only(self) -> None:
        async def failing() -> bool:
            raise TransportError("down")

        async def broken() -> bool:
            raise KeyError("bug")

        self.assertFalse(await safe_call(failing, False))
        with self.assertRaises(KeyError):
            await safe_call(broken, False)


class RadioConfigTest(unittest.TestCase):
    def test_from_env_reads_prefixed_variables(self) -> None:
        config = RadioConfig.from_env(
            {
                "BLUEWAKE_DESTINATION": "org.bluez",
                "BLUEWAKE_JOURNAL": "/tmp/j.csv",
                "BLUEWAKE_VERIFY_SETTLE": "0.5",
                "BLUEWAKE_WIFI_ENABLE": "sh -c 'ifup wlan0'",
            }
        )
        self.assertEqual(config.destination, "org.bluez")
        self.assertEqual(config.journal_path, Path("/tmp/j.csv"))
        self.assertEqual(config.verify_settle, 0.5)
        self.assertEqual(config.wifi_enable_command, ("sh", "-c", "ifup wlan0"))

    def test_bad_number_is_reported(self) -> None:
        with self.assertRaises(ValueError):
            RadioConfig.from_env({"BLUEWAKE_CALL_TIMEOUT": "soon"})

    def test_overrides_ignore_none(self) -> None:
        config = RadioConfig().with_overrides(destination=None, adapter_path="/org/bluez/hci1")
        self.assertEqual(config.destination, "com.kobo.mtk.bluedroid")
        self.assertEqual(config.adapter_path, "/org/bluez/hci1")


if __name__ == "__main__":
    unittest.main()
