"""systemd-logind integration: sleep signals in, inhibitor locks out."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Optional, Set

from dbus_fast import BusType, Message, MessageType
from dbus_fast.aio import MessageBus

from bluewake.coordinator import PowerEventCoordinator
from bluewake.errors import TransportError

logger = logging.getLogger(__name__)

LOGIN1_DESTINATION = "org.freedesktop.login1"
LOGIN1_PATH = "/org/freedesktop/login1"
LOGIN1_MANAGER = "org.freedesktop.login1.Manager"
SLEEP_MATCH_RULE = (
    f"type='signal',sender='{LOGIN1_DESTINATION}',path='{LOGIN1_PATH}',"
    f"interface='{LOGIN1_MANAGER}',member='PrepareForSleep'"
)


async def connect_host_bus() -> MessageBus:
    """System bus connection able to receive inhibitor file descriptors."""
    return await MessageBus(bus_type=BusType.SYSTEM, negotiate_unix_fd=True).connect()


async def take_inhibitor(bus: MessageBus, what: str, mode: str, why: str) -> int:
    """Ask logind for an inhibitor lock; the lock lives as long as the returned fd."""
    reply = await bus.call(
        Message(
            destination=LOGIN1_DESTINATION,
            path=LOGIN1_PATH,
            interface=LOGIN1_MANAGER,
            member="Inhibit",
            signature="ssss",
            body=[what, "bluewake", why, mode],
        )
    )
    if reply is None or reply.message_type == MessageType.ERROR:
        detail = reply.body[0] if reply is not None and reply.body else ""
        raise TransportError(f"Inhibit({what}, {mode}) refused: {detail}".rstrip())
    index = reply.body[0]
    if reply.unix_fds:
        return reply.unix_fds[index]
    return int(index)


def _close_fd(fd: Optional[int]) -> None:
    if fd is None:
        return
    with contextlib.suppress(OSError):
        os.close(fd)


class LogindIdleInhibitor:
    """Standby hooks backed by an ``idle`` inhibitor lock.

    The hooks are synchronous; taking the lock happens in a task and a
    release that arrives first wins.
    """

    def __init__(self, bus: Optional[MessageBus] = None) -> None:
        self.bus = bus
        self._fd: Optional[int] = None
        self._wanted = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def attach(self, bus: MessageBus) -> None:
        self.bus = bus
        if self._wanted and self._fd is None:
            self.prevent_standby()

    def prevent_standby(self) -> None:
        self._wanted = True
        if self.bus is None:
            return
        if self._fd is None and (self._task is None or self._task.done()):
            self._task = asyncio.get_running_loop().create_task(self._acquire(self.bus))

    def allow_standby(self) -> None:
        self._wanted = False
        fd, self._fd = self._fd, None
        _close_fd(fd)

    async def _acquire(self, bus: MessageBus) -> None:
        try:
            fd = await take_inhibitor(bus, "idle", "block", "Bluetooth session active")
        except (TransportError, OSError) as exc:
            logger.warning("Could not take idle inhibitor: %s", exc)
            return
        if not self._wanted or self._fd is not None:
            _close_fd(fd)
            return
        self._fd = fd
        logger.debug("Idle inhibitor taken (fd %s)", fd)


class LogindHost:
    """Deliver logind's PrepareForSleep to a :class:`PowerEventCoordinator`.

    A ``delay`` sleep inhibitor is held while the system is awake. On
    ``PrepareForSleep(true)`` the radio is powered down first and the lock is
    dropped afterwards, which is what lets the kernel proceed.
    """

    def __init__(self, coordinator: PowerEventCoordinator, bus: MessageBus) -> None:
        self.coordinator = coordinator
        self.bus = bus
        self._delay_fd: Optional[int] = None
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task[None]] = set()
        self._subscribed = False

    async def start(self) -> None:
        self.bus.add_message_handler(self._on_message)
        await self._add_match("AddMatch")
        self._subscribed = True
        await self._take_delay_lock()
        await self.coordinator.start()
        logger.info("Listening for logind sleep signals")

    async def stop(self) -> None:
        if self._subscribed:
            self.bus.remove_message_handler(self._on_message)
            with contextlib.suppress(TransportError):
                await self._add_match("RemoveMatch")
            self._subscribed = False
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._release_delay_lock()
        await self.coordinator.teardown()

    async def _add_match(self, member: str) -> None:
        reply = await self.bus.call(
            Message(
                destination="org.freedesktop.DBus",
                path="/org/freedesktop/DBus",
                interface="org.freedesktop.DBus",
                member=member,
                signature="s",
                body=[SLEEP_MATCH_RULE],
            )
        )
        if reply is not None and reply.message_type == MessageType.ERROR:
            raise TransportError(f"{member} failed: {reply.error_name}", error_name=reply.error_name)

    async def _take_delay_lock(self) -> None:
        if self._delay_fd is not None:
            return
        try:
            self._delay_fd = await take_inhibitor(self.bus, "sleep", "delay", "Power down Bluetooth before sleep")
        except (TransportError, OSError) as exc:
            logger.warning("Could not take sleep delay lock: %s", exc)

    def _release_delay_lock(self) -> None:
        fd, self._delay_fd = self._delay_fd, None
        _close_fd(fd)

    def _on_message(self, message: Message) -> None:
        if message.message_type != MessageType.SIGNAL:
            return
        if message.interface != LOGIN1_MANAGER or message.member != "PrepareForSleep":
            return
        going_to_sleep = bool(message.body[0]) if message.body else False
        task = asyncio.get_running_loop().create_task(self.handle_prepare_for_sleep(going_to_sleep))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_prepare_for_sleep(self, going_to_sleep: bool) -> None:
        async with self._lock:
            if going_to_sleep:
                try:
                    await self.coordinator.on_suspend()
                except Exception:
                    logger.exception("Suspend handling failed")
                finally:
                    self._release_delay_lock()
                return
            await self._take_delay_lock()
            try:
                self.coordinator.on_resume()
            except Exception:
                logger.exception("Resume handling failed")


__all__ = [
    "LogindHost",
    "LogindIdleInhibitor",
    "connect_host_bus",
    "take_inhibitor",
]
