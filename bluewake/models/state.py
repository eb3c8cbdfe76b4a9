from __future__ import annotations

from enum import Enum


class AdapterState(Enum):
    """Last observed power state of the adapter.

    The radio daemon is the authority; this is an inference that the
    controller keeps consistent with what it has asked for and observed.
    """

    OFF = "off"
    ENABLING = "enabling"
    ON = "on"
    DISABLING = "disabling"

    def can_become(self, target: "AdapterState") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    AdapterState.OFF: {AdapterState.OFF, AdapterState.ENABLING},
    AdapterState.ENABLING: {AdapterState.ON, AdapterState.OFF},
    AdapterState.ON: {AdapterState.ON, AdapterState.DISABLING, AdapterState.OFF},
    AdapterState.DISABLING: {AdapterState.OFF},
}


class EnableResult(Enum):
    ENABLED = "enabled"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


class ReconnectOutcome(Enum):
    CONNECTED = "connected"
    VERIFICATION_FAILED = "verification_failed"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"
