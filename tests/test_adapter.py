"""Tests for the adapter power state machine."""
from __future__ import annotations

import asyncio
import tempfile
import unittest

from bluewake.adapter import DISABLED_MESSAGE, ENABLE_TIMEOUT_MESSAGE
from bluewake.models import AdapterState, EnableResult
from bluewake.polling import RetryPolicy

from radio_fakes import FakeRadio, FakeWifi, build_stack


class AdapterControllerTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_enable_powers_on_and_fires_callback(self) -> None:
        stack = build_stack(self._tmp.name, wifi=FakeWifi(on=True))
        done = []

        handle = stack.adapter.enable_async(False, lambda: done.append(True))
        self.assertIs(await handle.wait(), EnableResult.ENABLED)

        self.assertEqual(done, [True])
        self.assertIs(stack.adapter.state, AdapterState.ON)
        self.assertTrue(stack.standby.held)
        self.assertEqual(len(stack.radio.methods("On")), 1)
        self.assertIn(True, stack.radio.power_writes())
        self.assertEqual(stack.wifi.calls, [])
        self.assertIsNone(stack.adapter.pending)

    async def test_enable_when_already_on_skips_power_writes(self) -> None:
        stack = build_stack(self._tmp.name, radio=FakeRadio(powered=True))
        done = []

        handle = stack.adapter.enable_async(True, lambda: done.append(True))
        self.assertIs(await handle.wait(), EnableResult.ENABLED)

        self.assertEqual(done, [True])
        self.assertEqual(stack.radio.power_writes(), [])
        self.assertEqual(stack.radio.methods("On"), [])
        self.assertTrue(stack.standby.held)
        self.assertIs(stack.adapter.state, AdapterState.ON)

    async def test_second_enable_supersedes_first(self) -> None:
        stack = build_stack(self._tmp.name)
        done = []

        first = stack.adapter.enable_async(False, lambda: done.append("first"))
        second = stack.adapter.enable_async(False, lambda: done.append("second"))

        self.assertIs(await second.wait(), EnableResult.ENABLED)
        self.assertIs(await first.wait(), EnableResult.ABORTED)
        self.assertTrue(first.aborted)
        self.assertEqual(done, ["second"])

    async def test_timeout_restores_everything(self) -> None:
        stack = build_stack(self._tmp.name, radio=FakeRadio(responds=False), wifi=FakeWifi(on=False))
        done = []

        handle = stack.adapter.enable_async(False, lambda: done.append(True))
        self.assertIs(await handle.wait(), EnableResult.TIMED_OUT)

        self.assertEqual(done, [])
        self.assertEqual(stack.sink.messages, [ENABLE_TIMEOUT_MESSAGE])
        self.assertIs(stack.adapter.state, AdapterState.OFF)
        self.assertFalse(stack.standby.held)
        self.assertEqual(stack.hooks, ["prevent", "allow"])
        # WiFi was brought up for the firmware and put back off afterwards
        self.assertEqual(stack.wifi.calls, ["enable", "disable"])
        self.assertFalse(stack.wifi.on)
        statuses = [row["status"] for row in stack.journal.read() if row["event"] == "enable"]
        self.assertEqual(statuses, ["timeout"])

    async def test_abort_mid_poll_wins(self) -> None:
        stack = build_stack(
            self._tmp.name,
            radio=FakeRadio(responds=False),
            policy=RetryPolicy(interval=0.02, max_attempts=30),
        )
        done = []

        handle = stack.adapter.enable_async(True, lambda: done.append(True))
        await asyncio.sleep(0.05)
        self.assertIs(stack.adapter.pending, handle)
        # a late Powered report must not revive the aborted attempt
        stack.radio.powered = True
        self.assertTrue(await stack.adapter.abort_pending())

        self.assertIs(await handle.wait(), EnableResult.ABORTED)
        self.assertEqual(done, [])
        self.assertEqual(stack.sink.messages, [])
        self.assertIs(stack.adapter.state, AdapterState.OFF)
        self.assertFalse(stack.standby.held)
        self.assertFalse(await stack.adapter.abort_pending())

    async def test_abort_puts_raised_wifi_back_down(self) -> None:
        stack = build_stack(
            self._tmp.name,
            radio=FakeRadio(responds=False),
            wifi=FakeWifi(on=False),
            policy=RetryPolicy(interval=0.02, max_attempts=30),
        )

        handle = stack.adapter.enable_async(False)
        await asyncio.sleep(0.03)
        self.assertTrue(stack.wifi.on)

        self.assertTrue(await stack.adapter.abort_pending())

        self.assertIs(await handle.wait(), EnableResult.ABORTED)
        self.assertFalse(stack.wifi.on)
        self.assertEqual(stack.wifi.calls, ["enable", "disable"])

    async def test_superseding_enable_keeps_first_wifi_snapshot(self) -> None:
        stack = build_stack(
            self._tmp.name,
            radio=FakeRadio(responds=False),
            wifi=FakeWifi(on=False),
            policy=RetryPolicy(interval=0.02, max_attempts=30),
        )

        first = stack.adapter.enable_async(False)
        await asyncio.sleep(0.03)
        self.assertTrue(stack.wifi.on)

        stack.radio.responds = True
        second = stack.adapter.enable_async(False)
        self.assertIs(await second.wait(), EnableResult.ENABLED)
        self.assertIs(await first.wait(), EnableResult.ABORTED)

        self.assertTrue(stack.radio.powered)
        self.assertFalse(stack.wifi.on)
        self.assertEqual(stack.wifi.calls, ["enable", "disable"])

    async def test_overlapping_disables_both_complete(self) -> None:
        stack = build_stack(self._tmp.name, radio=FakeRadio(powered=True))

        results = await asyncio.gather(
            stack.adapter.disable(),
            stack.adapter.disable(notify=True),
            return_exceptions=True,
        )

        self.assertEqual(results, [True, True])
        self.assertFalse(stack.radio.powered)
        self.assertIs(stack.adapter.state, AdapterState.OFF)

    async def test_disable_when_off_only_releases_standby(self) -> None:
        stack = build_stack(self._tmp.name)
        stack.standby.acquire()

        self.assertFalse(await stack.adapter.disable(notify=True))

        self.assertFalse(stack.standby.held)
        self.assertEqual(stack.radio.calls, [])
        self.assertEqual(stack.sink.messages, [])

    async def test_disable_powers_off(self) -> None:
        stack = build_stack(self._tmp.name, radio=FakeRadio(powered=True))
        await stack.adapter.refresh()
        stack.standby.acquire()

        self.assertTrue(await stack.adapter.disable(notify=True))

        self.assertEqual(stack.radio.power_writes(), [False])
        self.assertEqual(len(stack.radio.methods("Off")), 1)
        self.assertFalse(stack.radio.powered)
        self.assertFalse(stack.standby.held)
        self.assertIs(stack.adapter.state, AdapterState.OFF)
        self.assertEqual(stack.sink.messages, [DISABLED_MESSAGE])

    async def test_force_off_skips_enabled_check(self) -> None:
        stack = build_stack(self._tmp.name, radio=FakeRadio(powered=False))

        await stack.adapter.force_off()

        self.assertEqual(stack.radio.power_writes(), [False])
        self.assertEqual(len(stack.radio.methods("Off")), 1)
        self.assertIs(stack.adapter.state, AdapterState.OFF)

    async def test_unreachable_radio_reads_as_off(self) -> None:
        stack = build_stack(self._tmp.name, radio=FakeRadio(powered=True, reachable=False))
        with self.assertLogs("bluewake.errors", level="DEBUG"):
            self.assertFalse(await stack.adapter.is_enabled())
        self.assertIs(await stack.adapter.refresh(), AdapterState.OFF)


if __name__ == "__main__":
    unittest.main()
