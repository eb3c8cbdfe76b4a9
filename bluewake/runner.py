"""Out-of-process interpreter for reconnect strategy steps.

Run as ``python -m bluewake.runner`` with a JSON payload on stdin::

    {"destination": "com.kobo.mtk.bluedroid", "steps": [{"kind": "sleep", "seconds": 1}, ...]}

A failing step is logged and the sequence carries on; the parent judges the
outcome by re-querying the device, not by this process's exit status.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple

from bluewake.config import RadioConfig
from bluewake.errors import StepError, TransportError
from bluewake.models import Step, StepKind
from bluewake.transport import DBusTransport, RadioTransport

logger = logging.getLogger("bluewake.runner")


def kill_processes(name: str, *, proc_root: str | Path = "/proc", sig: int = signal.SIGTERM) -> int:
    """Signal every process whose ``comm`` equals ``name``. Returns how many were signalled."""
    killed = 0
    for comm in Path(proc_root).glob("[0-9]*/comm"):
        try:
            if comm.read_text(encoding="utf-8", errors="replace").strip() != name:
                continue
            pid = int(comm.parent.name)
        except (OSError, ValueError):
            continue
        if pid == os.getpid():
            continue
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Cannot signal %s (pid %s): %s", name, pid, exc)
            continue
        killed += 1
        logger.debug("Sent signal %s to %s (pid %s)", sig, name, pid)
    return killed


def spawn_detached(argv: Sequence[str]) -> int:
    """Start ``argv`` in its own session with stdio detached. Returns its pid."""
    proc = subprocess.Popen(
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )
    return proc.pid


async def run_step(
    transport: RadioTransport,
    step: Step,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    kill: Callable[[str], int] = kill_processes,
    spawn: Callable[[Sequence[str]], int] = spawn_detached,
) -> None:
    if step.kind is StepKind.SET_PROPERTY:
        await transport.set_bool_property(step.path, step.interface, step.name, step.value)
    elif step.kind is StepKind.INVOKE_METHOD:
        await transport.invoke_method(step.path, step.interface, step.name)
    elif step.kind is StepKind.SLEEP:
        await sleep(step.seconds)
    elif step.kind is StepKind.KILL_PROCESS:
        if kill(step.name) == 0:
            logger.info("No %s process to kill", step.name)
    elif step.kind is StepKind.SPAWN_DETACHED:
        spawn(step.argv)
    else:  # pragma: no cover - StepKind is exhaustive
        raise StepError(f"unsupported step kind {step.kind}")


async def run_steps(
    transport: RadioTransport,
    steps: Sequence[Step],
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    kill: Callable[[str], int] = kill_processes,
    spawn: Callable[[Sequence[str]], int] = spawn_detached,
) -> bool:
    """Run every step in order. Returns True only if none of them failed."""
    ok = True
    for index, step in enumerate(steps, start=1):
        logger.debug("Step %d/%d: %s", index, len(steps), step.describe())
        try:
            await run_step(transport, step, sleep=sleep, kill=kill, spawn=spawn)
        except (TransportError, StepError, OSError) as exc:
            ok = False
            logger.warning("Step %d (%s) failed: %s", index, step.describe(), exc)
    return ok


def decode_payload(raw: str | bytes) -> Tuple[Optional[str], List[Step], bool]:
    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StepError(f"invalid runner payload: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise StepError("runner payload must be a JSON object")
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list):
        raise StepError("runner payload needs a 'steps' list")
    steps = [Step.from_dict(item) for item in raw_steps]
    return payload.get("destination"), steps, bool(payload.get("verbose", False))


async def _run(destination: Optional[str], steps: Sequence[Step]) -> bool:
    config = RadioConfig.from_env().with_overrides(destination=destination)
    async with DBusTransport(config) as transport:
        return await run_steps(transport, steps)


def main() -> int:
    raw = sys.stdin.read()
    try:
        destination, steps, verbose = decode_payload(raw)
    except StepError as exc:
        logging.basicConfig(level=logging.WARNING)
        logger.error("%s", exc)
        return 1
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        ok = asyncio.run(_run(destination, steps))
    except TransportError as exc:
        logger.error("Could not reach the radio daemon: %s", exc)
        return 1
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
