"""Runtime configuration for bluewake."""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_DESTINATION = "com.kobo.mtk.bluedroid"
DEFAULT_ADAPTER_PATH = "/org/bluez/hci0"
DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / "bluewake"

ENV_PREFIX = "BLUEWAKE_"


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
	raw = env.get(ENV_PREFIX + key)
	if raw is None or raw == "":
		return default
	try:
		return float(raw)
	except ValueError as exc:
		raise ValueError(f"{ENV_PREFIX}{key} must be a number, got {raw!r}") from exc


def _env_argv(env: Mapping[str, str], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
	raw = env.get(ENV_PREFIX + key)
	if not raw:
		return default
	return tuple(shlex.split(raw))


@dataclass(slots=True)
class RadioConfig:
	"""Configuration bundle shared by the transport, guards and engine."""

	destination: str = DEFAULT_DESTINATION
	adapter_path: str = DEFAULT_ADAPTER_PATH
	settings_path: Path = field(default_factory=lambda: DEFAULT_STATE_DIR / "settings.json")
	journal_path: Optional[Path] = None
	wifi_interface: str = "wlan0"
	wifi_enable_command: tuple[str, ...] = ("./enable-wifi.sh",)
	wifi_disable_command: tuple[str, ...] = ("./disable-wifi.sh",)
	firmware_loader: str = "wmt_launcher"
	firmware_loader_argv: tuple[str, ...] = ("/usr/bin/wmt_launcher", "-p", "/etc/firmware/")
	verify_settle: float = 1.5
	startup_settle: float = 3.0
	call_timeout: float = 5.0

	def __post_init__(self) -> None:
		if not self.adapter_path.startswith("/"):
			raise ValueError("adapter_path must be an absolute object path")
		if self.verify_settle < 0 or self.startup_settle < 0:
			raise ValueError("settle delays must not be negative")
		if self.call_timeout <= 0:
			raise ValueError("call_timeout must be positive")
		self.settings_path = Path(self.settings_path)
		if self.journal_path is not None:
			self.journal_path = Path(self.journal_path)

	@classmethod
	def from_env(cls, env: Mapping[str, str] | None = None) -> "RadioConfig":
		env = os.environ if env is None else env
		base = cls()
		journal = env.get(ENV_PREFIX + "JOURNAL")
		return cls(
			destination=env.get(ENV_PREFIX + "DESTINATION", base.destination),
			adapter_path=env.get(ENV_PREFIX + "ADAPTER", base.adapter_path),
			settings_path=Path(env.get(ENV_PREFIX + "SETTINGS", str(base.settings_path))),
			journal_path=Path(journal) if journal else None,
			wifi_interface=env.get(ENV_PREFIX + "WIFI_INTERFACE", base.wifi_interface),
			wifi_enable_command=_env_argv(env, "WIFI_ENABLE", base.wifi_enable_command),
			wifi_disable_command=_env_argv(env, "WIFI_DISABLE", base.wifi_disable_command),
			firmware_loader=env.get(ENV_PREFIX + "FIRMWARE_LOADER", base.firmware_loader),
			firmware_loader_argv=_env_argv(env, "FIRMWARE_LOADER_ARGV", base.firmware_loader_argv),
			verify_settle=_env_float(env, "VERIFY_SETTLE", base.verify_settle),
			startup_settle=_env_float(env, "STARTUP_SETTLE", base.startup_settle),
			call_timeout=_env_float(env, "CALL_TIMEOUT", base.call_timeout),
		)

	def with_overrides(self, **changes: object) -> "RadioConfig":
		"""Return a copy with every non-``None`` keyword applied."""
		applied = {key: value for key, value in changes.items() if value is not None}
		return replace(self, **applied)


__all__ = [
	"DEFAULT_ADAPTER_PATH",
	"DEFAULT_DESTINATION",
	"RadioConfig",
]
