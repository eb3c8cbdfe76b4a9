"""Persisted key/value settings and the typed preference view over them."""
from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from bluewake.models import Device

logger = logging.getLogger(__name__)

AUTO_RESUME_BT = "auto_resume_bt"
STARTUP_RECONNECT = "startup_reconnect"
RECONNECT_STRATEGY_ID = "reconnect_strategy_id"
LAST_CONNECTED_ADDRESS = "last_connected_address"
LAST_CONNECTED_NAME = "last_connected_name"
AUTO_RESTORE_WIFI = "auto_restore_wifi"

DEFAULT_STRATEGY_ID = "short"


class Settings:
    """JSON-backed settings file.

    Writes stay in memory until :meth:`flush`, which replaces the file
    atomically so a crash never leaves a half-written store behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("Could not read settings %s: %s", self.path, exc)
            return {}
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring corrupt settings file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring settings file %s: top level is not an object", self.path)
            return {}
        return data

    def read_setting(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self._data.get(key)
        return default if value is None else value

    def has(self, key: str) -> bool:
        with self._lock:
            return self._data.get(key) is not None

    def save_setting(self, key: str, value: Any) -> None:
        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value

    def flush(self) -> None:
        with self._lock:
            payload = json.dumps(self._data, indent=2, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".settings-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise


class Preferences:
    """Named preferences read and written through :class:`Settings`.

    Every setter flushes, matching how the menu toggles behave: a change is
    on disk before the next suspend.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _set(self, key: str, value: Any) -> None:
        self.settings.save_setting(key, value)
        self.settings.flush()

    @property
    def auto_resume_bt(self) -> bool:
        return bool(self.settings.read_setting(AUTO_RESUME_BT, True))

    @auto_resume_bt.setter
    def auto_resume_bt(self, value: bool) -> None:
        self._set(AUTO_RESUME_BT, bool(value))

    @property
    def startup_reconnect(self) -> bool:
        return bool(self.settings.read_setting(STARTUP_RECONNECT, True))

    @startup_reconnect.setter
    def startup_reconnect(self, value: bool) -> None:
        self._set(STARTUP_RECONNECT, bool(value))

    @property
    def auto_restore_wifi(self) -> bool:
        return bool(self.settings.read_setting(AUTO_RESTORE_WIFI, False))

    @auto_restore_wifi.setter
    def auto_restore_wifi(self, value: bool) -> None:
        self._set(AUTO_RESTORE_WIFI, bool(value))

    @property
    def reconnect_strategy_id(self) -> str:
        return str(self.settings.read_setting(RECONNECT_STRATEGY_ID, DEFAULT_STRATEGY_ID))

    @reconnect_strategy_id.setter
    def reconnect_strategy_id(self, value: str) -> None:
        self._set(RECONNECT_STRATEGY_ID, value)

    @property
    def last_connected_address(self) -> Optional[str]:
        value = self.settings.read_setting(LAST_CONNECTED_ADDRESS)
        return str(value) if value else None

    @property
    def last_connected_name(self) -> Optional[str]:
        value = self.settings.read_setting(LAST_CONNECTED_NAME)
        return str(value) if value else None

    def remember_device(self, device: Device) -> None:
        self.settings.save_setting(LAST_CONNECTED_ADDRESS, device.address)
        self.settings.save_setting(LAST_CONNECTED_NAME, device.name or device.address)
        self.settings.flush()

    def forget_device(self) -> None:
        self.settings.save_setting(LAST_CONNECTED_ADDRESS, None)
        self.settings.save_setting(LAST_CONNECTED_NAME, None)
        self.settings.flush()

    def as_dict(self) -> Dict[str, Any]:
        return {
            AUTO_RESUME_BT: self.auto_resume_bt,
            STARTUP_RECONNECT: self.startup_reconnect,
            AUTO_RESTORE_WIFI: self.auto_restore_wifi,
            RECONNECT_STRATEGY_ID: self.reconnect_strategy_id,
            LAST_CONNECTED_ADDRESS: self.last_connected_address,
            LAST_CONNECTED_NAME: self.last_connected_name,
        }


__all__ = [
    "AUTO_RESTORE_WIFI",
    "AUTO_RESUME_BT",
    "DEFAULT_STRATEGY_ID",
    "LAST_CONNECTED_ADDRESS",
    "LAST_CONNECTED_NAME",
    "Preferences",
    "RECONNECT_STRATEGY_ID",
    "STARTUP_RECONNECT",
    "Settings",
]
