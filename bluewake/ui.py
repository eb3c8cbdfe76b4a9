from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

logger = logging.getLogger(__name__)


class UiSink(Protocol):
    """Passive display surface the core reports to.

    The core never waits on a sink for its own control flow; ``confirm`` only
    runs ``on_accept`` when the user agrees and returns whether they did.
    """

    def show_message(self, text: str, timeout: float = 2.0) -> None: ...

    def confirm(self, text: str, ok_text: str, on_accept: Callable[[], Any]) -> bool: ...

    def show_list(self, title: str, items: Sequence[str]) -> None: ...


class LoggingSink:
    """Default sink: every notification becomes a log line."""

    def show_message(self, text: str, timeout: float = 2.0) -> None:
        logger.info("NOTIFY: %s", text)

    def confirm(self, text: str, ok_text: str, on_accept: Callable[[], Any]) -> bool:
        logger.info("CONFIRM declined (no interactive surface): %s", text)
        return False

    def show_list(self, title: str, items: Sequence[str]) -> None:
        logger.info("%s: %s", title, ", ".join(items) or "(empty)")


class ConsoleSink:
    """Interactive terminal sink rendered with rich."""

    def __init__(self, console: Optional[Console] = None, *, assume_yes: bool = False) -> None:
        self.console = console or Console()
        self.assume_yes = assume_yes

    def show_message(self, text: str, timeout: float = 2.0) -> None:
        self.console.print(text)

    def confirm(self, text: str, ok_text: str, on_accept: Callable[[], Any]) -> bool:
        accepted = self.assume_yes or Confirm.ask(f"{text} ({ok_text})", console=self.console, default=False)
        if accepted:
            on_accept()
        return bool(accepted)

    def show_list(self, title: str, items: Sequence[str]) -> None:
        body = "\n".join(items) if items else "(empty)"
        self.console.print(Panel(body, title=title, expand=False))


@dataclass(slots=True)
class Notification:
    kind: str
    text: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds"))
    items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "text": self.text, "timestamp": self.timestamp}
        if self.items:
            payload["items"] = list(self.items)
        return payload


class BufferedSink:
    """Keeps the most recent notifications for the HTTP API.

    Confirmations are recorded but never accepted; remote callers confirm by
    issuing the action endpoint directly.
    """

    def __init__(self, maxlen: int = 50) -> None:
        self._entries: Deque[Notification] = deque(maxlen=maxlen)

    def show_message(self, text: str, timeout: float = 2.0) -> None:
        logger.info("NOTIFY: %s", text)
        self._entries.append(Notification("message", text))

    def confirm(self, text: str, ok_text: str, on_accept: Callable[[], Any]) -> bool:
        self._entries.append(Notification("confirm", text))
        return False

    def show_list(self, title: str, items: Sequence[str]) -> None:
        self._entries.append(Notification("list", title, items=list(items)))

    @property
    def messages(self) -> List[str]:
        return [entry.text for entry in self._entries if entry.kind == "message"]

    def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [entry.to_dict() for entry in entries]

    def clear(self) -> None:
        self._entries.clear()


__all__ = [
    "BufferedSink",
    "ConsoleSink",
    "LoggingSink",
    "Notification",
    "UiSink",
]
