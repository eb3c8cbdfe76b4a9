from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Sequence

from bluewake.errors import StepError

ADAPTER_PLACEHOLDER = "{adapter}"
DEVICE_PLACEHOLDER = "{device}"


class StepKind(Enum):
    SET_PROPERTY = "set_property"
    INVOKE_METHOD = "invoke_method"
    SLEEP = "sleep"
    KILL_PROCESS = "kill_process"
    SPAWN_DETACHED = "spawn_detached"


_FIELDS = {
    StepKind.SET_PROPERTY: ("path", "interface", "name", "value"),
    StepKind.INVOKE_METHOD: ("path", "interface", "name"),
    StepKind.SLEEP: ("seconds",),
    StepKind.KILL_PROCESS: ("name",),
    StepKind.SPAWN_DETACHED: ("argv",),
}


@dataclass(frozen=True, slots=True)
class Step:
    """One primitive of a recovery procedure.

    ``name`` is the property name, the method name or the process name
    depending on ``kind``. Object paths may carry ``{adapter}`` and
    ``{device}`` placeholders until :meth:`resolve` binds them.
    """

    kind: StepKind
    path: str = ""
    interface: str = ""
    name: str = ""
    value: bool = False
    seconds: float = 0.0
    argv: tuple[str, ...] = ()

    @classmethod
    def set_property(cls, path: str, interface: str, name: str, value: bool) -> "Step":
        return cls(StepKind.SET_PROPERTY, path=path, interface=interface, name=name, value=bool(value))

    @classmethod
    def invoke_method(cls, path: str, interface: str, method: str) -> "Step":
        return cls(StepKind.INVOKE_METHOD, path=path, interface=interface, name=method)

    @classmethod
    def sleep(cls, seconds: float) -> "Step":
        if seconds < 0:
            raise StepError(f"sleep duration must not be negative, got {seconds}")
        return cls(StepKind.SLEEP, seconds=float(seconds))

    @classmethod
    def kill_process(cls, name: str) -> "Step":
        if not name:
            raise StepError("kill_process needs a process name")
        return cls(StepKind.KILL_PROCESS, name=name)

    @classmethod
    def spawn_detached(cls, argv: Sequence[str]) -> "Step":
        if not argv:
            raise StepError("spawn_detached needs a command")
        return cls(StepKind.SPAWN_DETACHED, argv=tuple(argv))

    def resolve(self, adapter_path: str, device_path: str) -> "Step":
        if not self.path:
            return self
        path = self.path.replace(ADAPTER_PLACEHOLDER, adapter_path).replace(DEVICE_PLACEHOLDER, device_path)
        if path == self.path:
            return self
        return Step(
            self.kind,
            path=path,
            interface=self.interface,
            name=self.name,
            value=self.value,
            seconds=self.seconds,
            argv=self.argv,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value}
        for key in _FIELDS[self.kind]:
            value = getattr(self, key)
            payload[key] = list(value) if key == "argv" else value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Step":
        try:
            kind = StepKind(payload["kind"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StepError(f"unknown step kind in {payload!r}") from exc
        missing = [key for key in _FIELDS[kind] if key not in payload]
        if missing:
            raise StepError(f"{kind.value} step is missing {', '.join(missing)}")
        if kind is StepKind.SET_PROPERTY:
            return cls.set_property(payload["path"], payload["interface"], payload["name"], payload["value"])
        if kind is StepKind.INVOKE_METHOD:
            return cls.invoke_method(payload["path"], payload["interface"], payload["name"])
        if kind is StepKind.SLEEP:
            return cls.sleep(float(payload["seconds"]))
        if kind is StepKind.KILL_PROCESS:
            return cls.kill_process(str(payload["name"]))
        return cls.spawn_detached([str(arg) for arg in payload["argv"]])

    def describe(self) -> str:
        if self.kind is StepKind.SET_PROPERTY:
            return f"set {self.interface}.{self.name}={self.value} on {self.path}"
        if self.kind is StepKind.INVOKE_METHOD:
            return f"call {self.interface}.{self.name} on {self.path}"
        if self.kind is StepKind.SLEEP:
            return f"sleep {self.seconds:g}s"
        if self.kind is StepKind.KILL_PROCESS:
            return f"kill {self.name}"
        return "spawn " + " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class ReconnectStrategy:
    """A named recovery procedure run after wake.

    A negative ``delay`` marks the manual entry that never reconnects on
    its own.
    """

    id: str
    label: str
    description: str
    delay: float
    steps: tuple[Step, ...] = ()

    @property
    def is_manual(self) -> bool:
        return self.delay < 0

    def bind(self, adapter_path: str, device_path: str) -> list[Step]:
        return [step.resolve(adapter_path, device_path) for step in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "delay": self.delay,
            "steps": [step.describe() for step in self.steps],
        }
