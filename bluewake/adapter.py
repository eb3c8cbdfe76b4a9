"""Adapter power state machine with standby and WiFi bookkeeping."""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Awaitable, Callable, Optional, Set

from bluewake.errors import TransportError, safe_call
from bluewake.guards import StandbyGuard, WifiCoexistenceGuard
from bluewake.journal import EventJournal, NullJournal
from bluewake.models import AdapterState, EnableResult
from bluewake.polling import PollResult, RetryPolicy, poll_until
from bluewake.transport import ADAPTER_INTERFACE, MANAGER_INTERFACE, MANAGER_PATH, RadioTransport
from bluewake.ui import LoggingSink, UiSink

logger = logging.getLogger(__name__)

ENABLE_TIMEOUT_MESSAGE = "Bluetooth enable timed out."
DISABLED_MESSAGE = "Bluetooth disabled."

_handle_ids = itertools.count(1)


class EnableHandle:
    """Single enable attempt.

    Aborting only raises a flag; the poll loop notices it at its next
    suspension point and exits without firing any callback.
    """

    def __init__(self, resume_context: bool, on_done: Optional[Callable[[], None]] = None) -> None:
        self.id = next(_handle_ids)
        self.resume_context = resume_context
        self.on_done = on_done
        self._aborted = False
        # WiFi state before this attempt touched it; None until snapshotted
        self.wifi_was_on: Optional[bool] = None
        self._future: asyncio.Future[EnableResult] = asyncio.get_running_loop().create_future()
        self.task: Optional[asyncio.Task[None]] = None

    def abort(self) -> None:
        self._aborted = True

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def result(self) -> Optional[EnableResult]:
        return self._future.result() if self._future.done() else None

    async def wait(self) -> EnableResult:
        return await asyncio.shield(self._future)

    def _finish(self, result: EnableResult) -> None:
        if not self._future.done():
            self._future.set_result(result)

    def __repr__(self) -> str:
        return f"<EnableHandle #{self.id} resume={self.resume_context} aborted={self._aborted} result={self.result}>"


class AdapterController:
    """Owns the adapter's on/off state machine.

    The radio daemon is the authority on power; ``state`` is what this
    controller last asked for or observed, kept consistent with the
    transition table in :class:`~bluewake.models.AdapterState`.
    """

    def __init__(
        self,
        transport: RadioTransport,
        standby: StandbyGuard,
        wifi_guard: WifiCoexistenceGuard,
        sink: Optional[UiSink] = None,
        journal: EventJournal | NullJournal | None = None,
        *,
        adapter_path: str = "/org/bluez/hci0",
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self._standby = standby
        self.wifi_guard = wifi_guard
        self.sink = sink or LoggingSink()
        self.journal = journal or NullJournal()
        self.adapter_path = adapter_path
        self.policy = policy or RetryPolicy.enable_confirmation()
        self._sleep = sleep
        self._state = AdapterState.OFF
        self._pending: Optional[EnableHandle] = None
        self._background: Set[asyncio.Task[None]] = set()
        self._restores: Set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def standby(self) -> StandbyGuard:
        return self._standby

    @property
    def pending(self) -> Optional[EnableHandle]:
        if self._pending is not None and self._pending.done:
            return None
        return self._pending

    def _transition(self, target: AdapterState) -> None:
        if target is self._state:
            return
        if not self._state.can_become(target):
            raise RuntimeError(f"invalid adapter transition {self._state.name} -> {target.name}")
        logger.debug("Adapter %s -> %s", self._state.name, target.name)
        self._state = target

    def _mark_on(self) -> None:
        if self._state is AdapterState.DISABLING:
            return
        if self._state is AdapterState.OFF:
            self._transition(AdapterState.ENABLING)
        self._transition(AdapterState.ON)

    async def is_enabled(self) -> bool:
        return await safe_call(
            lambda: self.transport.get_bool_property(self.adapter_path, ADAPTER_INTERFACE, "Powered"),
            False,
            error_msg="Powered query failed, assuming off",
        )

    async def refresh(self) -> AdapterState:
        """Re-observe the adapter when no enable is in flight."""
        enabled = await self.is_enabled()
        if self.pending is None and self._state is not AdapterState.DISABLING:
            if enabled:
                self._mark_on()
            else:
                self._transition(AdapterState.OFF)
        return self._state

    # ------------------------------------------------------------------
    # Enable
    # ------------------------------------------------------------------
    def enable_async(self, resume_context: bool, on_done: Optional[Callable[[], None]] = None) -> EnableHandle:
        """Start an enable attempt, superseding any attempt still in flight."""
        previous = self._abort_current()
        handle = EnableHandle(resume_context, on_done)
        self._pending = handle
        handle.task = asyncio.get_running_loop().create_task(self._run_enable(handle, previous))
        return handle

    async def abort_pending(self) -> bool:
        """Abort the in-flight enable, if any. Returns whether one was aborted.

        WiFi is put back the way the aborted attempt found it before this
        returns.
        """
        handle = self._abort_and_restore()
        if handle is not None:
            self._standby.release()
            self.journal.record("enable", status="aborted")
        await self._settle_restores()
        return handle is not None

    def _abort_current(self) -> Optional[EnableHandle]:
        handle = self._pending
        self._pending = None
        if handle is None or handle.done:
            return None
        handle.abort()
        # an unsent power-on must not land after a suspend powered us down
        for task in list(self._background):
            task.cancel()
        if self._state is AdapterState.ENABLING:
            self._transition(AdapterState.OFF)
        logger.debug("Aborted enable attempt #%d", handle.id)
        return handle

    def _abort_and_restore(self) -> Optional[EnableHandle]:
        handle = self._abort_current()
        if handle is not None:
            task = asyncio.ensure_future(self._restore_after_abort(handle))
            self._restores.add(task)
            task.add_done_callback(self._restores.discard)
        return handle

    async def _restore_after_abort(self, handle: EnableHandle) -> None:
        # the attempt may still be inside ensure_up; let it reach its abort check
        if handle.task is not None:
            await asyncio.wait({handle.task})
        if handle.wifi_was_on is None:
            return
        logger.debug("Restoring WiFi after aborted enable attempt #%d", handle.id)
        await self.wifi_guard.restore(handle.resume_context, handle.wifi_was_on)

    async def _settle_restores(self) -> None:
        while self._restores:
            await asyncio.gather(*list(self._restores), return_exceptions=True)

    async def _run_enable(self, handle: EnableHandle, previous: Optional[EnableHandle] = None) -> None:
        try:
            if previous is not None and previous.task is not None:
                await asyncio.wait({previous.task})
                # keep the superseded attempt's view of WiFi, it may have raised it
                handle.wifi_was_on = previous.wifi_was_on
            # only restores already running; a restore of this attempt waits on it
            earlier = list(self._restores)
            if earlier:
                await asyncio.gather(*earlier, return_exceptions=True)
            result = await self._enable(handle)
        except asyncio.CancelledError:
            handle._finish(EnableResult.ABORTED)
            raise
        except Exception:
            logger.exception("Enable attempt #%d failed unexpectedly", handle.id)
            if self._pending is handle:
                self._pending = None
                self._standby.release()
                self._transition(AdapterState.OFF)
                if handle.wifi_was_on is not None:
                    await self.wifi_guard.restore(handle.resume_context, handle.wifi_was_on)
            result = EnableResult.ABORTED
        handle._finish(result)

    async def _enable(self, handle: EnableHandle) -> EnableResult:
        enabled = await self.is_enabled()
        if handle.aborted:
            return EnableResult.ABORTED
        if enabled:
            logger.debug("Adapter already on, skipping power-on")
            if handle.wifi_was_on is not None:
                await self.wifi_guard.restore(handle.resume_context, handle.wifi_was_on)
                if handle.aborted:
                    return EnableResult.ABORTED
            self._standby.acquire()
            self._mark_on()
            self._complete(handle, fast_path=True)
            return EnableResult.ENABLED

        self._transition(AdapterState.ENABLING)
        if handle.wifi_was_on is None:
            handle.wifi_was_on = await self.wifi_guard.snapshot()
        if handle.aborted:
            return EnableResult.ABORTED
        self._standby.acquire()
        await self.wifi_guard.ensure_up()
        if handle.aborted:
            return EnableResult.ABORTED

        self._spawn(self._power_on())
        outcome = await poll_until(
            self.is_enabled,
            self.policy,
            should_abort=lambda: handle.aborted,
            sleep=self._sleep,
        )
        if outcome is PollResult.ABORTED:
            return EnableResult.ABORTED

        if outcome is PollResult.CONFIRMED:
            await self.wifi_guard.restore(handle.resume_context, handle.wifi_was_on)
            if handle.aborted:
                return EnableResult.ABORTED
            self._transition(AdapterState.ON)
            self._complete(handle, fast_path=False)
            return EnableResult.ENABLED

        logger.warning("Adapter did not report Powered within %.1fs", self.policy.ceiling)
        self._pending = None
        self._standby.release()
        await self.wifi_guard.restore(handle.resume_context, handle.wifi_was_on)
        self._transition(AdapterState.OFF)
        self.journal.record("enable", status="timeout", resume=handle.resume_context)
        self.sink.show_message(ENABLE_TIMEOUT_MESSAGE, timeout=3)
        return EnableResult.TIMED_OUT

    def _complete(self, handle: EnableHandle, *, fast_path: bool) -> None:
        self._pending = None
        self.journal.record("enable", status="ok", resume=handle.resume_context, fast_path=fast_path)
        logger.info("Bluetooth enabled (attempt #%d)", handle.id)
        if handle.on_done is None:
            return
        try:
            handle.on_done()
        except Exception:
            logger.exception("Enable completion callback failed")

    async def _power_on(self) -> None:
        try:
            await self.transport.invoke_method(MANAGER_PATH, MANAGER_INTERFACE, "On")
            await self.transport.set_bool_property(self.adapter_path, ADAPTER_INTERFACE, "Powered", True)
        except TransportError as exc:
            logger.warning("Power-on request failed: %s", exc)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Disable
    # ------------------------------------------------------------------
    async def _power_off(self) -> None:
        await safe_call(
            lambda: self.transport.set_bool_property(self.adapter_path, ADAPTER_INTERFACE, "Powered", False),
            None,
            error_msg="Powered=false failed",
        )
        await safe_call(
            lambda: self.transport.invoke_method(MANAGER_PATH, MANAGER_INTERFACE, "Off"),
            None,
            error_msg="BluedroidManager1.Off failed",
        )

    async def disable(self, notify: bool = False) -> bool:
        """Power the adapter down. Returns whether a power-off was issued."""
        self._abort_and_restore()
        if not await self.is_enabled():
            self._standby.release()
            # an overlapping disable owns the DISABLING -> OFF step
            if self._state is not AdapterState.DISABLING:
                self._transition(AdapterState.OFF)
            await self._settle_restores()
            return False
        self._mark_on()
        self._transition(AdapterState.DISABLING)
        await self._power_off()
        self._standby.release()
        self._transition(AdapterState.OFF)
        await self._settle_restores()
        self.journal.record("disable", status="ok", notify=notify)
        logger.info("Bluetooth disabled")
        if notify:
            self.sink.show_message(DISABLED_MESSAGE)
        return True

    async def force_off(self) -> None:
        """Emergency power-off that skips the enabled check."""
        self._abort_and_restore()
        await self._power_off()
        await self._settle_restores()
        self._standby.release()
        self._transition(AdapterState.OFF)
        self.journal.record("force_off", status="ok")
        logger.warning("Bluetooth forced off")

    async def close(self) -> None:
        self._abort_and_restore()
        await self._settle_restores()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "AdapterController",
    "DISABLED_MESSAGE",
    "ENABLE_TIMEOUT_MESSAGE",
    "EnableHandle",
]
