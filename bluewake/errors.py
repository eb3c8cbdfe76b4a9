"""Exception types and the failure-absorbing helper used at component seams."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BluewakeError(Exception):
    """Base class for errors raised inside bluewake."""


class TransportError(BluewakeError):
    """A radio daemon call could not be completed.

    Raised for unreachable buses, error replies and malformed replies alike;
    callers only care that the operation did not happen.
    """

    def __init__(self, message: str, *, error_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_name = error_name


class StepError(BluewakeError):
    """A strategy step could not be decoded or executed."""


async def safe_call(
    func: Callable[[], Awaitable[T]],
    default: T,
    *,
    error_msg: str = "radio call failed",
) -> T:
    """Await ``func()`` and return ``default`` if the transport gives up.

    Only :class:`TransportError` is absorbed; anything else is a bug and is
    left to propagate.
    """
    try:
        return await func()
    except TransportError as exc:
        logger.debug("%s: %s", error_msg, exc)
        return default


__all__ = [
    "BluewakeError",
    "TransportError",
    "StepError",
    "safe_call",
]
