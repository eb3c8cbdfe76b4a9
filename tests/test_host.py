"""Tests for the logind sleep-signal host with an in-memory bus."""
from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from types import SimpleNamespace
from typing import Any, List

from dbus_fast import MessageType

from bluewake.host import LOGIN1_MANAGER, LogindHost, LogindIdleInhibitor
from bluewake.models import EnableResult

from radio_fakes import FakeRadio, build_stack


class _FakeSystemBus:
    """Answers Inhibit with a fresh pipe fd and every other call with an empty return."""

    def __init__(self) -> None:
        self.members: List[str] = []
        self.handlers: List[Any] = []
        self.fds: List[int] = []

    async def call(self, message: Any) -> Any:
        self.members.append(message.member)
        if message.member == "Inhibit":
            read_fd, write_fd = os.pipe()
            os.close(write_fd)
            self.fds.append(read_fd)
            return SimpleNamespace(message_type=MessageType.METHOD_RETURN, body=[0], unix_fds=[read_fd])
        return SimpleNamespace(message_type=MessageType.METHOD_RETURN, body=[], unix_fds=[])

    def add_message_handler(self, handler: Any) -> None:
        self.handlers.append(handler)

    def remove_message_handler(self, handler: Any) -> None:
        self.handlers.remove(handler)


def _fd_open(fd: int) -> bool:
    try:
        os.fstat(fd)
    except OSError:
        return False
    return True


class LogindHostTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.stack = build_stack(self._tmp.name, radio=FakeRadio(powered=True))
        self.stack.preferences.startup_reconnect = False
        self.bus = _FakeSystemBus()
        self.host = LogindHost(self.stack.coordinator, self.bus)  # type: ignore[arg-type]

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_start_subscribes_and_takes_delay_lock(self) -> None:
        await self.host.start()
        self.assertEqual(self.bus.members, ["AddMatch", "Inhibit"])
        self.assertEqual(len(self.bus.handlers), 1)
        self.assertTrue(self.stack.standby.held)

        await self.host.stop()
        self.assertEqual(self.bus.handlers, [])
        self.assertIn("RemoveMatch", self.bus.members)
        self.assertFalse(_fd_open(self.bus.fds[0]))

    async def test_sleep_signal_powers_down_then_releases_delay_lock(self) -> None:
        await self.host.start()
        delay_fd = self.bus.fds[0]

        signal = SimpleNamespace(
            message_type=MessageType.SIGNAL,
            interface=LOGIN1_MANAGER,
            member="PrepareForSleep",
            body=[True],
        )
        self.host._on_message(signal)  # type: ignore[arg-type]
        await asyncio.gather(*list(self.host._tasks))

        self.assertFalse(self.stack.radio.powered)
        self.assertFalse(_fd_open(delay_fd))

        await self.host.handle_prepare_for_sleep(False)
        self.assertEqual(self.bus.members.count("Inhibit"), 2)
        handle = self.stack.adapter.pending
        self.assertIsNotNone(handle)
        self.assertIs(await handle.wait(), EnableResult.ENABLED)
        self.assertTrue(self.stack.radio.powered)

        await self.host.stop()

    async def test_other_signals_are_ignored(self) -> None:
        self.host._on_message(SimpleNamespace(message_type=MessageType.SIGNAL, interface="org.example", member="PrepareForSleep", body=[True]))  # type: ignore[arg-type]
        self.assertEqual(self.host._tasks, set())


class LogindIdleInhibitorTest(unittest.IsolatedAsyncioTestCase):
    async def test_late_attach_takes_wanted_lock(self) -> None:
        bus = _FakeSystemBus()
        inhibitor = LogindIdleInhibitor()

        inhibitor.prevent_standby()
        self.assertFalse(inhibitor.held)
        inhibitor.attach(bus)  # type: ignore[arg-type]
        await inhibitor._task

        self.assertTrue(inhibitor.held)
        inhibitor.allow_standby()
        self.assertFalse(inhibitor.held)
        self.assertFalse(_fd_open(bus.fds[0]))

    async def test_release_before_lock_arrives_wins(self) -> None:
        bus = _FakeSystemBus()
        inhibitor = LogindIdleInhibitor(bus)  # type: ignore[arg-type]

        inhibitor.prevent_standby()
        inhibitor.allow_standby()
        await inhibitor._task

        self.assertFalse(inhibitor.held)
        self.assertFalse(_fd_open(bus.fds[0]))


if __name__ == "__main__":
    unittest.main()
