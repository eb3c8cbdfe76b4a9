"""Suspend/resume coordination plus the menu actions built on top of it."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from bluewake.adapter import AdapterController, EnableHandle
from bluewake.config import RadioConfig
from bluewake.directory import DEFAULT_SCAN_DURATION, DeviceDirectory
from bluewake.guards import ScriptWifiControl, StandbyGuard, WifiCoexistenceGuard, WifiControl
from bluewake.journal import EventJournal, NullJournal, open_journal
from bluewake.models import AdapterState, Device
from bluewake.models.device import normalize_address
from bluewake.settings import Preferences, Settings
from bluewake.strategies import ReconnectStrategyEngine, StepLauncher
from bluewake.transport import DBusTransport, RadioTransport
from bluewake.ui import LoggingSink, UiSink

logger = logging.getLogger(__name__)

ENABLING_MESSAGE = "Enabling Bluetooth…"
ENABLED_MESSAGE = "Bluetooth enabled."
FORCED_OFF_MESSAGE = "Bluetooth force-disabled."
NO_DEVICES_MESSAGE = "No Bluetooth devices found nearby."


class PowerEventCoordinator:
    """Single owner of the radio's runtime state.

    ``on_suspend`` must finish before the host lets the kernel sleep; it only
    waits on the bounded disable calls. ``on_resume`` chains enable and
    reconnect so a reconnect is never scheduled before the adapter is up.
    """

    def __init__(
        self,
        adapter: AdapterController,
        engine: ReconnectStrategyEngine,
        directory: DeviceDirectory,
        preferences: Preferences,
        sink: Optional[UiSink] = None,
        journal: EventJournal | NullJournal | None = None,
        *,
        startup_settle: float = 3.0,
        transport: Optional[RadioTransport] = None,
    ) -> None:
        self.adapter = adapter
        self.engine = engine
        self.directory = directory
        self.preferences = preferences
        self.sink = sink or LoggingSink()
        self.journal = journal or NullJournal()
        self.startup_settle = startup_settle
        self.transport = transport
        self.was_on_before_suspend = False
        self._startup_timer: Optional[asyncio.TimerHandle] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle signals
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        enabled = await self.adapter.refresh() is AdapterState.ON
        if enabled and self.preferences.startup_reconnect:
            logger.info("Bluetooth already on at startup, scheduling reconnect")
            loop = asyncio.get_running_loop()
            self._startup_timer = loop.call_later(self.startup_settle, self._startup_reconnect)
        if enabled:
            self.adapter.standby.acquire()
        self.journal.record("startup", status="ok", enabled=enabled)

    def _startup_reconnect(self) -> None:
        self._startup_timer = None
        self.engine.schedule_reconnect()

    def _cancel_startup_timer(self) -> None:
        if self._startup_timer is not None:
            self._startup_timer.cancel()
            self._startup_timer = None

    async def on_suspend(self) -> None:
        logger.debug("on_suspend")
        try:
            await self.adapter.abort_pending()
            self.was_on_before_suspend = await self.adapter.is_enabled()
            self.engine.cancel_scheduled()
            self._cancel_startup_timer()
            if self.was_on_before_suspend:
                logger.info("Bluetooth on, turning it off before sleep")
                await self.adapter.disable(notify=False)
        finally:
            self.adapter.standby.release()
        self.journal.record("suspend", status="ok", was_on=self.was_on_before_suspend)

    def on_resume(self) -> Optional[EnableHandle]:
        logger.debug("on_resume, was_on=%s", self.was_on_before_suspend)
        if not self.was_on_before_suspend:
            self.journal.record("resume", status="skipped", message="was off")
            return None
        if not self.preferences.auto_resume_bt:
            logger.debug("auto_resume_bt disabled")
            self.journal.record("resume", status="skipped", message="auto resume off")
            return None
        self.journal.record("resume", status="pending")
        return self.adapter.enable_async(True, on_done=self.engine.schedule_reconnect)

    async def teardown(self) -> None:
        self._cancel_startup_timer()
        self.engine.cancel_scheduled()
        await self.adapter.abort_pending()
        await self.engine.close()
        await self.adapter.close()
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        self._started = False

    # ------------------------------------------------------------------
    # Menu actions
    # ------------------------------------------------------------------
    def enable(self, on_done: Optional[Callable[[], None]] = None) -> EnableHandle:
        self.sink.show_message(ENABLING_MESSAGE)

        def _enabled() -> None:
            self.sink.show_message(ENABLED_MESSAGE)
            if on_done is not None:
                on_done()

        return self.adapter.enable_async(False, on_done=_enabled)

    async def disable(self) -> bool:
        return await self.adapter.disable(notify=True)

    async def force_off(self) -> None:
        self.engine.cancel_scheduled()
        self._cancel_startup_timer()
        await self.adapter.force_off()
        self.was_on_before_suspend = False
        self.sink.show_message(FORCED_OFF_MESSAGE)

    async def scan(self, duration: float = DEFAULT_SCAN_DURATION) -> List[Device]:
        devices = await self.directory.scan(duration)
        if not devices:
            self.sink.show_message(NO_DEVICES_MESSAGE, timeout=3)
        else:
            self.sink.show_list("Scan results", [device.label for device in devices])
        return devices

    async def _resolve(self, address: str) -> Device:
        device = await self.directory.find(address)
        if device is None:
            address = normalize_address(address)
            device = Device(address=address, name=address)
        return device

    async def connect_device(self, address: str) -> bool:
        device = await self._resolve(address)
        self.sink.show_message(f"Connecting to {device.name}…", timeout=1)
        ok = await self.directory.connect(device)
        self.sink.show_message(f"Connected to {device.name}" if ok else "Connection failed.", timeout=3)
        self.journal.record("connect", status="ok" if ok else "failed", address=device.address)
        return ok

    async def disconnect_device(self, address: str) -> bool:
        device = await self._resolve(address)
        ok = await self.directory.disconnect(device)
        self.sink.show_message("Disconnected." if ok else "Disconnect failed.")
        self.journal.record("disconnect", status="ok" if ok else "failed", address=device.address)
        return ok

    def forget_device(self) -> None:
        self.preferences.forget_device()
        logger.info("Forgot last connected device")

    async def status(self) -> Dict[str, Any]:
        enabled = await self.adapter.is_enabled()
        pending = self.adapter.pending
        return {
            "enabled": enabled,
            "state": self.adapter.state.value,
            "standby_prevented": self.adapter.standby.held,
            "was_on_before_suspend": self.was_on_before_suspend,
            "enable_pending": pending is not None,
            "reconnect_pending": self.engine.pending,
            "reconnect_running": self.engine.running,
            "reconnect_strategy": self.engine.current_strategy().id,
            "last_device": {
                "address": self.preferences.last_connected_address,
                "name": self.preferences.last_connected_name,
            },
            "preferences": self.preferences.as_dict(),
        }


def build_coordinator(
    config: Optional[RadioConfig] = None,
    *,
    transport: Optional[RadioTransport] = None,
    sink: Optional[UiSink] = None,
    wifi: Optional[WifiControl] = None,
    standby: Optional[StandbyGuard] = None,
    launcher: Optional[StepLauncher] = None,
    journal: EventJournal | NullJournal | None = None,
) -> PowerEventCoordinator:
    """Wire every component from one :class:`RadioConfig`."""
    config = config or RadioConfig.from_env()
    transport = transport or DBusTransport(config)
    sink = sink or LoggingSink()
    journal = journal if journal is not None else open_journal(config.journal_path)
    preferences = Preferences(Settings(config.settings_path))
    wifi = wifi or ScriptWifiControl(
        config.wifi_interface,
        enable_command=config.wifi_enable_command,
        disable_command=config.wifi_disable_command,
    )
    adapter = AdapterController(
        transport,
        standby or StandbyGuard(),
        WifiCoexistenceGuard(wifi, lambda: preferences.auto_restore_wifi),
        sink,
        journal,
        adapter_path=config.adapter_path,
    )
    directory = DeviceDirectory(transport, preferences, adapter_path=config.adapter_path)
    engine = ReconnectStrategyEngine(
        directory,
        adapter,
        preferences,
        sink,
        journal,
        config=config,
        launcher=launcher,
    )
    return PowerEventCoordinator(
        adapter,
        engine,
        directory,
        preferences,
        sink,
        journal,
        startup_settle=config.startup_settle,
        transport=transport,
    )


__all__ = [
    "ENABLED_MESSAGE",
    "PowerEventCoordinator",
    "build_coordinator",
]
