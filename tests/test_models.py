"""Tests for the plain data types in bluewake.models."""
from __future__ import annotations

import json
import unittest

from bluewake.errors import StepError
from bluewake.models import AdapterState, Device, ReconnectStrategy, Step, StepKind
from bluewake.models.device import normalize_address


class DeviceTest(unittest.TestCase):
    def test_label_marks_connected_and_paired(self) -> None:
        self.assertEqual(Device("AA:BB:CC:DD:EE:FF", "Remote", paired=True, connected=True).label, "Remote ✓")
        self.assertEqual(Device("AA:BB:CC:DD:EE:FF", "Remote", paired=True).label, "Remote (paired)")
        self.assertEqual(Device("AA:BB:CC:DD:EE:FF", "Remote").label, "Remote")

    def test_normalize_address_accepts_path_style(self) -> None:
        self.assertEqual(normalize_address(" aa_bb_cc_dd_ee_ff "), "AA:BB:CC:DD:EE:FF")
        self.assertEqual(normalize_address("aa-bb-cc-dd-ee-ff"), "AA:BB:CC:DD:EE:FF")

    def test_to_dict_is_json_ready(self) -> None:
        payload = Device("AA:BB:CC:DD:EE:FF", "Remote", paired=True).to_dict()
        self.assertEqual(json.loads(json.dumps(payload))["paired"], True)


class AdapterStateTest(unittest.TestCase):
    def test_direct_off_to_on_is_not_allowed(self) -> None:
        self.assertFalse(AdapterState.OFF.can_become(AdapterState.ON))
        self.assertTrue(AdapterState.OFF.can_become(AdapterState.ENABLING))
        self.assertTrue(AdapterState.ENABLING.can_become(AdapterState.ON))

    def test_every_state_can_fall_back_to_off(self) -> None:
        for state in AdapterState:
            self.assertTrue(state.can_become(AdapterState.OFF), state)

    def test_disabling_only_leads_to_off(self) -> None:
        allowed = [target for target in AdapterState if AdapterState.DISABLING.can_become(target)]
        self.assertEqual(allowed, [AdapterState.OFF])


class StepTest(unittest.TestCase):
    def test_resolve_substitutes_placeholders(self) -> None:
        step = Step.invoke_method("{device}", "org.bluez.Device1", "Connect")
        bound = step.resolve("/org/bluez/hci0", "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF")
        self.assertEqual(bound.path, "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF")
        self.assertEqual(bound.name, "Connect")
        self.assertEqual(step.path, "{device}")

    def test_resolve_without_placeholder_returns_same_step(self) -> None:
        step = Step.invoke_method("/", "com.kobo.bluetooth.BluedroidManager1", "On")
        self.assertIs(step.resolve("/org/bluez/hci0", "/x"), step)

    def test_dict_form_keeps_only_relevant_fields(self) -> None:
        self.assertEqual(Step.sleep(1.5).to_dict(), {"kind": "sleep", "seconds": 1.5})
        self.assertEqual(
            Step.spawn_detached(["/usr/bin/wmt_launcher", "-p", "/etc/firmware/"]).to_dict(),
            {"kind": "spawn_detached", "argv": ["/usr/bin/wmt_launcher", "-p", "/etc/firmware/"]},
        )

    def test_from_dict_rebuilds_set_property(self) -> None:
        step = Step.from_dict(
            {"kind": "set_property", "path": "/org/bluez/hci0", "interface": "org.bluez.Adapter1", "name": "Powered", "value": True}
        )
        self.assertIs(step.kind, StepKind.SET_PROPERTY)
        self.assertTrue(step.value)

    def test_from_dict_rejects_bad_payloads(self) -> None:
        with self.assertRaises(StepError):
            Step.from_dict({"kind": "reboot"})
        with self.assertRaises(StepError):
            Step.from_dict({"kind": "invoke_method", "path": "/"})
        with self.assertRaises(StepError):
            Step.from_dict({"kind": "sleep", "seconds": -1})

    def test_constructors_validate_arguments(self) -> None:
        with self.assertRaises(StepError):
            Step.kill_process("")
        with self.assertRaises(StepError):
            Step.spawn_detached([])


class ReconnectStrategyTest(unittest.TestCase):
    def test_negative_delay_is_manual(self) -> None:
        self.assertTrue(ReconnectStrategy("manual", "Manual", "", -1).is_manual)
        self.assertFalse(ReconnectStrategy("immediate", "Now", "", 0).is_manual)

    def test_bind_resolves_every_step(self) -> None:
        strategy = ReconnectStrategy(
            "retry",
            "Retry",
            "",
            2,
            (Step.invoke_method("{device}", "org.bluez.Device1", "Connect"), Step.sleep(3)),
        )
        steps = strategy.bind("/org/bluez/hci0", "/org/bluez/hci0/dev_11_22_33_44_55_66")
        self.assertEqual(steps[0].path, "/org/bluez/hci0/dev_11_22_33_44_55_66")
        self.assertEqual(steps[1].seconds, 3.0)
        self.assertEqual(strategy.to_dict()["steps"][1], "sleep 3s")


if __name__ == "__main__":
    unittest.main()
