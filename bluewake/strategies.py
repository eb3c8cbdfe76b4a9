"""Reconnect strategy catalogue and the engine that schedules and verifies attempts."""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from bluewake.adapter import AdapterController
from bluewake.config import RadioConfig
from bluewake.directory import DeviceDirectory
from bluewake.journal import EventJournal, NullJournal
from bluewake.models import ReconnectOutcome, ReconnectStrategy, Step
from bluewake.models.strategy import ADAPTER_PLACEHOLDER, DEVICE_PLACEHOLDER
from bluewake.polling import PollResult, RetryPolicy, poll_until
from bluewake.settings import DEFAULT_STRATEGY_ID, Preferences
from bluewake.transport import ADAPTER_INTERFACE, DEVICE_INTERFACE, MANAGER_INTERFACE, MANAGER_PATH, device_path
from bluewake.ui import LoggingSink, UiSink

logger = logging.getLogger(__name__)

RECONNECTED_MESSAGE = "Bluetooth reconnected."
MANUAL_RECONNECTED_MESSAGE = "Reconnected!"
RECONNECT_FAILED_MESSAGE = "Reconnect failed."
NO_DEVICE_MESSAGE = "No known device to reconnect to."

StepLauncher = Callable[[Sequence[Step]], Awaitable[int]]

_CONNECT = Step.invoke_method(DEVICE_PLACEHOLDER, DEVICE_INTERFACE, "Connect")
_POWERED_OFF = Step.set_property(ADAPTER_PLACEHOLDER, ADAPTER_INTERFACE, "Powered", False)
_POWERED_ON = Step.set_property(ADAPTER_PLACEHOLDER, ADAPTER_INTERFACE, "Powered", True)
_MANAGER_OFF = Step.invoke_method(MANAGER_PATH, MANAGER_INTERFACE, "Off")
_MANAGER_ON = Step.invoke_method(MANAGER_PATH, MANAGER_INTERFACE, "On")


def build_catalogue(
    loader_name: str = "wmt_launcher",
    loader_argv: Sequence[str] = ("/usr/bin/wmt_launcher", "-p", "/etc/firmware/"),
) -> tuple[ReconnectStrategy, ...]:
    """Strategies ordered from least to most invasive; ``manual`` comes last."""
    return (
        ReconnectStrategy("immediate", "Immediately (0 s delay)", "Connect as soon as the adapter is up.", 0, (_CONNECT,)),
        ReconnectStrategy("short", "Short delay (2 s)", "Connect two seconds after wake.", 2, (_CONNECT,)),
        ReconnectStrategy("medium", "Medium delay (5 s)", "Connect five seconds after wake.", 5, (_CONNECT,)),
        ReconnectStrategy("long", "Long delay (10 s)", "Connect ten seconds after wake.", 10, (_CONNECT,)),
        ReconnectStrategy(
            "retry",
            "Connect twice",
            "Connect, wait three seconds and connect again.",
            2,
            (_CONNECT, Step.sleep(3), _CONNECT),
        ),
        ReconnectStrategy(
            "power_cycle",
            "Power-cycle adapter",
            "Toggle the adapter's Powered property before connecting.",
            2,
            (_POWERED_OFF, Step.sleep(1), _POWERED_ON, Step.sleep(2), _CONNECT),
        ),
        ReconnectStrategy(
            "daemon_restart",
            "Restart Bluetooth daemon",
            "Switch the vendor Bluetooth manager off and on before connecting.",
            2,
            (_MANAGER_OFF, Step.sleep(1), _MANAGER_ON, Step.sleep(2), _POWERED_ON, Step.sleep(2), _CONNECT),
        ),
        ReconnectStrategy(
            "firmware_reload",
            "Reload shared firmware",
            "Restart the WMT firmware loader, then bring the stack back up and connect.",
            3,
            (
                _POWERED_OFF,
                _MANAGER_OFF,
                Step.kill_process(loader_name),
                Step.sleep(1),
                Step.spawn_detached(loader_argv),
                Step.sleep(3),
                _MANAGER_ON,
                Step.sleep(2),
                _POWERED_ON,
                Step.sleep(2),
                _CONNECT,
            ),
        ),
        ReconnectStrategy("manual", "Manual only (no auto-reconnect)", "Never reconnect on its own.", -1),
    )


CATALOGUE = build_catalogue()


def strategy_by_id(strategy_id: Optional[str], catalogue: Sequence[ReconnectStrategy] = CATALOGUE) -> ReconnectStrategy:
    """Look up a strategy, falling back to the default for unknown ids."""
    fallback = None
    for strategy in catalogue:
        if strategy.id == strategy_id:
            return strategy
        if strategy.id == DEFAULT_STRATEGY_ID:
            fallback = strategy
    if fallback is None:
        raise LookupError(f"catalogue has no {DEFAULT_STRATEGY_ID!r} strategy")
    if strategy_id is not None:
        logger.debug("Unknown reconnect strategy %r, using %s", strategy_id, fallback.id)
    return fallback


class SubprocessLauncher:
    """Run a step sequence in ``python -m bluewake.runner``.

    Only the child's exit is awaited; its return code is logged but never
    taken as proof that a reconnect worked.
    """

    def __init__(
        self,
        *,
        destination: str,
        python: str = sys.executable,
        module: str = "bluewake.runner",
        verbose: bool = False,
    ) -> None:
        self.destination = destination
        self.python = python
        self.module = module
        self.verbose = verbose

    def payload(self, steps: Sequence[Step]) -> bytes:
        body: Dict[str, object] = {
            "destination": self.destination,
            "steps": [step.to_dict() for step in steps],
            "verbose": self.verbose,
        }
        return json.dumps(body).encode("utf-8")

    async def __call__(self, steps: Sequence[Step]) -> int:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.python,
                "-m",
                self.module,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("Could not start step runner: %s", exc)
            return -1
        await proc.communicate(self.payload(steps))
        return proc.returncode if proc.returncode is not None else -1


class ReconnectStrategyEngine:
    """Schedule, run and verify reconnect attempts to the last known device.

    At most one attempt is scheduled at a time. Every schedule or cancel bumps
    a generation counter; a timer callback whose generation is stale returns
    without doing anything, even if the event loop had already queued it.
    """

    def __init__(
        self,
        directory: DeviceDirectory,
        adapter: AdapterController,
        preferences: Preferences,
        sink: Optional[UiSink] = None,
        journal: EventJournal | NullJournal | None = None,
        *,
        config: Optional[RadioConfig] = None,
        catalogue: Optional[Sequence[ReconnectStrategy]] = None,
        launcher: Optional[StepLauncher] = None,
        verify_settle: Optional[float] = None,
    ) -> None:
        config = config or RadioConfig()
        self.directory = directory
        self.adapter = adapter
        self.preferences = preferences
        self.sink = sink or LoggingSink()
        self.journal = journal or NullJournal()
        self.adapter_path = config.adapter_path
        self.catalogue: tuple[ReconnectStrategy, ...] = tuple(
            catalogue if catalogue is not None else build_catalogue(config.firmware_loader, config.firmware_loader_argv)
        )
        self.launcher: StepLauncher = launcher or SubprocessLauncher(destination=config.destination)
        self.verify_settle = config.verify_settle if verify_settle is None else verify_settle
        self._generation = 0
        self._timer: Optional[asyncio.Handle] = None
        self._attempts: Set[asyncio.Task[ReconnectOutcome]] = set()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def current_strategy(self) -> ReconnectStrategy:
        return strategy_by_id(self.preferences.reconnect_strategy_id, self.catalogue)

    def select_strategy(self, strategy_id: str) -> ReconnectStrategy:
        for strategy in self.catalogue:
            if strategy.id == strategy_id:
                self.preferences.reconnect_strategy_id = strategy.id
                logger.info("Reconnect strategy set to %s", strategy.id)
                return strategy
        raise ValueError(f"unknown reconnect strategy {strategy_id!r}")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._attempts)

    def schedule_reconnect(self) -> bool:
        """Arm a reconnect with the current strategy. Returns whether one was armed."""
        self.cancel_scheduled()
        strategy = self.current_strategy()
        if strategy.is_manual:
            logger.debug("Reconnect strategy is manual, skipping")
            return False
        address = self.preferences.last_connected_address
        if not address:
            logger.debug("No last connected address, skipping reconnect")
            return False

        generation = self._generation
        loop = asyncio.get_running_loop()
        if strategy.delay == 0:
            self._timer = loop.call_soon(self._fire, generation, strategy, address)
        else:
            self._timer = loop.call_later(strategy.delay, self._fire, generation, strategy, address)
        self.journal.record("reconnect_scheduled", status="pending", address=address, strategy=strategy.id, delay=strategy.delay)
        logger.info("Reconnect to %s scheduled in %ss (strategy=%s)", address, strategy.delay, strategy.id)
        return True

    def cancel_scheduled(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.debug("Scheduled reconnect cancelled")

    def _fire(self, generation: int, strategy: ReconnectStrategy, address: str) -> None:
        if generation != self._generation:
            return
        self._timer = None
        task = asyncio.ensure_future(self._attempt(strategy, address, generation, manual=False))
        self._attempts.add(task)
        task.add_done_callback(self._attempts.discard)

    async def wait_idle(self) -> None:
        """Wait for every attempt already launched to finish verification."""
        while self._attempts:
            await asyncio.gather(*list(self._attempts), return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def reconnect_now(self, strategy: Optional[ReconnectStrategy | str] = None) -> ReconnectOutcome:
        """Reconnect immediately, reporting the outcome either way."""
        if isinstance(strategy, str):
            strategy = strategy_by_id(strategy, self.catalogue)
        strategy = strategy or self.current_strategy()
        if strategy.is_manual:
            strategy = strategy_by_id("immediate", self.catalogue)
        address = self.preferences.last_connected_address
        if not address:
            self.sink.show_message(NO_DEVICE_MESSAGE)
            return ReconnectOutcome.SKIPPED
        self.cancel_scheduled()
        return await self._attempt(strategy, address, self._generation, manual=True)

    async def _attempt(self, strategy: ReconnectStrategy, address: str, generation: int, *, manual: bool) -> ReconnectOutcome:
        with self.journal.scope(address=address, strategy=strategy.id):
            if not await self.adapter.is_enabled():
                logger.warning("Adapter not enabled at reconnect time, skipping %s", address)
                self.journal.record("reconnect", status="skipped", message="adapter off")
                if manual:
                    self.sink.show_message(RECONNECT_FAILED_MESSAGE)
                return ReconnectOutcome.SKIPPED

            steps = strategy.bind(self.adapter_path, device_path(self.adapter_path, address))
            logger.info("Reconnecting to %s with strategy %s (%d steps)", address, strategy.id, len(steps))
            self.journal.record("reconnect_launch", status="pending", steps=len(steps), manual=manual)
            code = await self.launcher(steps)
            logger.debug("Step runner exited with %s", code)

            result = await poll_until(
                lambda: self.directory.is_connected(address),
                RetryPolicy.reconnect_verification(self.verify_settle),
            )
            connected = result is PollResult.CONFIRMED
            superseded = generation != self._generation
            self.journal.record(
                "reconnect_verify",
                status="ok" if connected else "failed",
                exit_code=code,
                superseded=superseded,
            )

            if superseded:
                logger.info("Reconnect attempt to %s was superseded (connected=%s)", address, connected)
                return ReconnectOutcome.SUPERSEDED
            if connected:
                logger.info("Reconnected to %s", address)
                self.sink.show_message(MANUAL_RECONNECTED_MESSAGE if manual else RECONNECTED_MESSAGE, timeout=2)
                return ReconnectOutcome.CONNECTED
            logger.warning("Reconnect to %s failed verification", address)
            if manual:
                self.sink.show_message(RECONNECT_FAILED_MESSAGE)
            return ReconnectOutcome.VERIFICATION_FAILED

    async def close(self) -> None:
        self.cancel_scheduled()
        tasks = list(self._attempts)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def describe(self) -> List[Dict[str, object]]:
        current = self.current_strategy().id
        return [dict(strategy.to_dict(), current=strategy.id == current) for strategy in self.catalogue]


__all__ = [
    "CATALOGUE",
    "RECONNECTED_MESSAGE",
    "RECONNECT_FAILED_MESSAGE",
    "ReconnectStrategyEngine",
    "StepLauncher",
    "SubprocessLauncher",
    "build_catalogue",
    "strategy_by_id",
]
