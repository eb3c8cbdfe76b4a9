from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


def normalize_address(address: str) -> str:
    """Upper-case a MAC-like address and use ``:`` separators."""
    return address.strip().replace("_", ":").replace("-", ":").upper()


@dataclass(frozen=True, slots=True)
class Device:
    """A remote device as last reported by the radio daemon."""

    address: str
    name: str
    paired: bool = False
    connected: bool = False

    @property
    def label(self) -> str:
        if self.connected:
            return f"{self.name} ✓"
        if self.paired:
            return f"{self.name} (paired)"
        return self.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "paired": self.paired,
            "connected": self.connected,
        }
