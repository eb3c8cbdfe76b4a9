"""Standby suppression bookkeeping and WiFi coexistence snapshot/restore."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class StandbyGuard:
    """Idempotent wrapper over the host's prevent/allow standby calls.

    Acquiring while held and releasing while not held are no-ops, so the host
    never sees a double suppression or a double release.
    """

    def __init__(
        self,
        prevent_standby: Optional[Callable[[], None]] = None,
        allow_standby: Optional[Callable[[], None]] = None,
    ) -> None:
        self._prevent = prevent_standby
        self._allow = allow_standby
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        if self._held:
            return
        if self._prevent is not None:
            self._prevent()
        self._held = True
        logger.debug("Standby prevented")

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self._allow is not None:
            self._allow()
        logger.debug("Standby allowed")


class WifiControl(Protocol):
    async def is_on(self) -> bool: ...

    async def enable(self) -> None:
        """Start bringing WiFi up without waiting for it to finish."""

    async def disable(self) -> None: ...


class ScriptWifiControl:
    """WiFi control through the platform's enable/disable scripts.

    The radio counts as on while its network interface exists, which is
    what the Kobo scripts toggle by loading and unloading the driver.
    """

    def __init__(
        self,
        interface: str = "wlan0",
        *,
        enable_command: Sequence[str] = ("./enable-wifi.sh",),
        disable_command: Sequence[str] = ("./disable-wifi.sh",),
        sysfs_root: str | Path = "/sys/class/net",
    ) -> None:
        self.interface = interface
        self.enable_command = tuple(enable_command)
        self.disable_command = tuple(disable_command)
        self._sysfs_root = Path(sysfs_root)
        self._enable_task: Optional[asyncio.Task[None]] = None

    async def is_on(self) -> bool:
        return (self._sysfs_root / self.interface).exists()

    async def enable(self) -> None:
        if self._enable_task is not None and not self._enable_task.done():
            return
        self._enable_task = asyncio.create_task(self._run(self.enable_command))

    async def disable(self) -> None:
        await self._run(self.disable_command)

    async def _run(self, argv: Sequence[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("Could not run %s: %s", argv[0], exc)
            return
        code = await proc.wait()
        if code != 0:
            logger.warning("%s exited with status %s", argv[0], code)


class WifiCoexistenceGuard:
    """Keep a Bluetooth power change from leaving WiFi permanently altered.

    Both radios share the coexistence firmware, and Bluetooth only comes up
    when the WiFi stack is loaded. The guard records WiFi's state before the
    adapter is touched and afterwards only ever turns WiFi *off* again.
    """

    def __init__(self, wifi: WifiControl, auto_restore_wifi: Callable[[], bool]) -> None:
        self.wifi = wifi
        self._auto_restore_wifi = auto_restore_wifi
        self.was_on: Optional[bool] = None

    async def snapshot(self) -> bool:
        self.was_on = await self._is_on()
        logger.debug("WiFi snapshot = %s", self.was_on)
        return self.was_on

    async def ensure_up(self) -> None:
        if await self._is_on():
            return
        logger.debug("Bringing WiFi up for coexistence firmware init")
        try:
            await self.wifi.enable()
        except OSError as exc:
            logger.warning("Could not start WiFi: %s", exc)

    async def restore(self, resume_context: bool, was_on: Optional[bool] = None) -> None:
        if was_on is None:
            was_on = self.was_on
        if resume_context:
            # resume: WiFi coming back is the resume path's job; only undo it
            # when the user turned auto-restore off
            if self._auto_restore_wifi() or not await self._is_on():
                return
            logger.debug("auto_restore_wifi off, disabling WiFi after resume")
        else:
            if was_on is not False or not await self._is_on():
                return
            logger.debug("WiFi was off before Bluetooth was enabled, disabling it again")
        try:
            await self.wifi.disable()
        except OSError as exc:
            logger.warning("Could not disable WiFi: %s", exc)

    async def _is_on(self) -> bool:
        try:
            return await self.wifi.is_on()
        except OSError as exc:
            logger.warning("Could not read WiFi state: %s", exc)
            return False


__all__ = [
    "ScriptWifiControl",
    "StandbyGuard",
    "WifiCoexistenceGuard",
    "WifiControl",
]
