"""Value types shared across bluewake.

Everything here is plain data: devices are rebuilt from every directory
query, strategies are an immutable catalogue and steps are interpreted by
the out-of-process runner.
"""
from .device import Device
from .state import AdapterState, EnableResult, ReconnectOutcome
from .strategy import ReconnectStrategy, Step, StepKind

__all__ = [
    "AdapterState",
    "Device",
    "EnableResult",
    "ReconnectOutcome",
    "ReconnectStrategy",
    "Step",
    "StepKind",
]
