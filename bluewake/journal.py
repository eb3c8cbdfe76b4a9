"""Append-only CSV journal of power and reconnect events.

Each lifecycle decision (suspend, resume, enable outcome, reconnect launch and
verification) lands here as one row, so what the coordinator did around a
sleep cycle can be checked afterwards. Rows are written synchronously and
flushed so ``tail -f`` and the ``/events`` websocket see them immediately.
"""
from __future__ import annotations

import contextlib
import contextvars
import csv
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "status",
    "address",
    "strategy",
    "message",
    "extra",
)


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(extra)


@dataclass(slots=True)
class JournalEntry:
    timestamp: str
    event: str
    status: str = ""
    address: str = ""
    strategy: str = ""
    message: str = ""
    extra: str = ""

    def as_row(self) -> Dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "event": self.event,
            "status": self.status,
            "address": self.address,
            "strategy": self.strategy,
            "message": self.message,
            "extra": self.extra,
        }


class EventJournal:
    """CSV journal with optional nested context.

    ``scope()`` pushes key/values that are merged into every row written
    inside the block; ``address`` and ``strategy`` keys are lifted into their
    own columns, everything else goes to ``extra``. Scopes belong to the
    asyncio task that opened them, so concurrent attempts never tag each
    other's rows.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._scopes: contextvars.ContextVar[Tuple[Dict[str, Any], ...]] = contextvars.ContextVar(
            f"journal_scopes_{id(self)}", default=()
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=FIELDS).writeheader()

    def record(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        message: Optional[str] = None,
        **extra: Any,
    ) -> None:
        payload: Dict[str, Any] = {}
        for layer in self._scopes.get():
            payload.update(layer)
        payload.update({key: value for key, value in extra.items() if value is not None})
        entry = JournalEntry(
            timestamp=self._timestamp(),
            event=event,
            status=status or "",
            address=str(payload.pop("address", "") or ""),
            strategy=str(payload.pop("strategy", "") or ""),
            message=message or "",
            extra=_encode_extra(payload),
        )
        try:
            self._append(entry)
        except OSError:
            # a lost row never aborts a lifecycle signal
            logger.warning("Could not write journal entry %s to %s", event, self.path, exc_info=True)

    @contextlib.contextmanager
    def scope(self, **extra: Any) -> Iterator[None]:
        token = self._scopes.set(self._scopes.get() + (dict(extra),))
        try:
            yield
        finally:
            self._scopes.reset(token)

    def read(self) -> List[Dict[str, str]]:
        with self._lock:
            with self.path.open("r", newline="", encoding="utf-8") as handle:
                return list(csv.DictReader(handle))

    def _append(self, entry: JournalEntry) -> None:
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=FIELDS).writerow(entry.as_row())
                handle.flush()

    def _timestamp(self) -> str:
        dt = self._clock()
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


class NullJournal:
    """Stand-in used when no journal path is configured."""

    def record(self, event: str, *, status: Optional[str] = None, message: Optional[str] = None, **extra: Any) -> None:
        return None

    @contextlib.contextmanager
    def scope(self, **extra: Any) -> Iterator[None]:
        yield


def open_journal(path: str | Path | None) -> EventJournal | NullJournal:
    if path is None:
        return NullJournal()
    return EventJournal(path)


__all__ = [
    "EventJournal",
    "FIELDS",
    "JournalEntry",
    "NullJournal",
    "open_journal",
]
